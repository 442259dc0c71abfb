"""
TC classifier loaded into the kernel by the enforcement engine.

Attached at the ingress hook of each host-side veth, it sees every packet a
pod sends. For IPv4 packets it reports a flow record on the ring buffer and
drops the packet when the source address carries the block flag.
"""

from ..constants import EngineLayout

CLASSIFIER_PROGRAM = r"""
#include <uapi/linux/bpf.h>
#include <uapi/linux/pkt_cls.h>
#include <linux/if_ether.h>
#include <linux/ip.h>
#include <linux/in.h>

struct flow_record {
    u32 saddr;
    u32 daddr;
    u16 sport;
    u16 dport;
    u8 protocol;
    u8 blocked;
    u8 found_in_table;
    u8 flag_value;
    u32 lookup_addr;
};

// pod IP (as found in ip->saddr) -> 1 block, 0 monitor only
BPF_HASH(__FLAG_TABLE__, u32, u8, __FLAG_TABLE_MAX__);
BPF_RINGBUF_OUTPUT(__EVENTS__, __RINGBUF_PAGES__);

int __CLASSIFIER__(struct __sk_buff *skb) {
    void *data_end = (void *)(long)skb->data_end;
    void *data = (void *)(long)skb->data;

    struct ethhdr *eth = data;
    if ((void *)(eth + 1) > data_end)
        return TC_ACT_OK;

    if (eth->h_proto != htons(ETH_P_IP))
        return TC_ACT_OK;

    struct iphdr *ip = (void *)(eth + 1);
    if ((void *)(ip + 1) > data_end)
        return TC_ACT_OK;

    struct flow_record *rec = __EVENTS__.ringbuf_reserve(sizeof(struct flow_record));
    if (!rec)
        return TC_ACT_OK;

    rec->saddr = ip->saddr;
    rec->daddr = ip->daddr;
    rec->protocol = ip->protocol;
    rec->sport = 0;
    rec->dport = 0;
    rec->blocked = 0;
    rec->found_in_table = 0;
    rec->flag_value = 0;
    rec->lookup_addr = ip->saddr;

    if (ip->protocol == IPPROTO_TCP || ip->protocol == IPPROTO_UDP) {
        void *transport = (void *)ip + (ip->ihl * 4);
        if (transport + 4 <= data_end) {
            u16 *ports = transport;
            rec->sport = ntohs(ports[0]);
            rec->dport = ntohs(ports[1]);
        }
    }

    u32 key = ip->saddr;
    u8 *flag = __FLAG_TABLE__.lookup(&key);
    if (flag) {
        rec->found_in_table = 1;
        rec->flag_value = *flag;
        if (*flag == 1) {
            rec->blocked = 1;
            __EVENTS__.ringbuf_submit(rec, 0);
            return TC_ACT_SHOT;
        }
    }

    __EVENTS__.ringbuf_submit(rec, 0);
    return TC_ACT_OK;
}
"""


def render_program() -> str:
    """Return the classifier source with table names and sizes filled in."""
    return (
        CLASSIFIER_PROGRAM
        .replace('__FLAG_TABLE_MAX__', str(EngineLayout.FLAG_TABLE_MAX_ENTRIES))
        .replace('__FLAG_TABLE__', EngineLayout.FLAG_TABLE_NAME)
        .replace('__RINGBUF_PAGES__', str(EngineLayout.RINGBUF_PAGES))
        .replace('__EVENTS__', EngineLayout.EVENTS_NAME)
        .replace('__CLASSIFIER__', EngineLayout.CLASSIFIER_NAME)
    )


# cflags for mixed kernel/userspace header sets
CFLAGS = [
    "-w",
    "-DBPF_LOAD_ACQ=0xe1",
    "-DBPF_STORE_REL=0xf1",
]
