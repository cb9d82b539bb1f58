import pytest

from konnect.metrics import (
    Counter,
    CounterVec,
    Gauge,
    GaugeVec,
    Histogram,
    HistogramVec,
    Registry,
    Segment,
    StreamError,
    build_fq_name,
    make_stream_errors_total_metric,
    make_stream_packets_total_metric,
    observe_packet,
    observe_stream_error,
    observe_stream_error_no_packet,
    status_code,
)
from konnect.packet import PacketType


def test_build_fq_name():
    assert (
        build_fq_name("konnectivity_network_proxy", "client", "dial_failure_total")
        == "konnectivity_network_proxy_client_dial_failure_total"
    )
    assert build_fq_name("ns", "", "name") == "ns_name"
    assert build_fq_name("ns", "sub", "") == ""


def test_status_code():
    assert status_code(None) == "OK"
    assert status_code(StreamError("gone", code="Unavailable")) == "Unavailable"
    assert status_code(ValueError("x")) == "Unknown"


def test_counter_rejects_negative():
    c = Counter()
    c.inc()
    c.inc(2)
    assert c.value == 3
    with pytest.raises(ValueError):
        c.inc(-1)
    assert c.value == 3


def test_gauge_operations():
    g = Gauge()
    g.inc()
    g.inc()
    g.dec()
    assert g.value == 1
    g.set(7)
    assert g.value == 7


def test_histogram_cumulative_buckets():
    h = Histogram([1, 0.1])
    h.observe(0.5)
    h.observe(0.05)
    assert [b for b, _ in h.buckets] == [0.1, 1.0]
    counts = [c for _, c in h.buckets]
    assert counts == sorted(counts)
    assert counts[-1] == h.count == 2
    assert h.sum == pytest.approx(0.55)


def test_label_cardinality_checked():
    vec = CounterVec("x", "help", ("a", "b"))
    with pytest.raises(ValueError):
        vec.with_label_values("only-one")


def test_same_labels_same_child_and_reset():
    vec = GaugeVec("g", "help", ("status",))
    vec.with_label_values("ok").inc()
    vec.with_label_values("ok").inc()
    assert vec.samples() == [("g", {"status": "ok"}, 2)]
    vec.reset()
    assert vec.samples() == []
    assert vec.expose() == ""


def test_expose_layout():
    vec = CounterVec("total", "Some help", ("reason",), namespace="ns", subsystem="sub")
    vec.with_label_values("b").inc()
    vec.with_label_values("a").inc(3)
    lines = vec.expose().splitlines()
    assert lines[0] == "# HELP ns_sub_total Some help"
    assert lines[1] == "# TYPE ns_sub_total counter"
    assert lines[2:] == ['ns_sub_total{reason="a"} 3', 'ns_sub_total{reason="b"} 1']


def test_histogram_vec_samples_consistent():
    vec = HistogramVec("lat", "help", (), buckets=[0.1, 1])
    vec.with_label_values().observe(0.5)
    samples = vec.samples()
    names = [name for name, _, _ in samples]
    assert names.count("lat_bucket") == 3
    count = [v for name, _, v in samples if name == "lat_count"]
    inf = [v for name, labels, v in samples if labels.get("le") == "+Inf"]
    assert count == inf == [1]


def test_registry_duplicate_and_gather_filter():
    reg = Registry()
    a = CounterVec("a", "help a")
    b = CounterVec("b", "help b")
    reg.must_register(a, b)
    with pytest.raises(ValueError):
        reg.register(CounterVec("a", "other"))
    a.with_label_values().inc()
    b.with_label_values().inc()
    assert reg.gather("b") == b.expose()
    assert reg.gather() == a.expose() + b.expose()


def test_observe_packet_labels():
    m = make_stream_packets_total_metric("ns", "sub")
    observe_packet(m, Segment.FROM_CLIENT, PacketType.DIAL_REQ)
    observe_packet(m, Segment.FROM_CLIENT, PacketType.DIAL_REQ)
    assert m.samples() == [
        ("ns_sub_stream_packets_total", {"segment": "from_client", "packet_type": "DIAL_REQ"}, 2)
    ]


def test_observe_stream_errors():
    m = make_stream_errors_total_metric("ns", "sub")
    observe_stream_error_no_packet(m, Segment.TO_AGENT, ValueError("x"))
    observe_stream_error(m, Segment.FROM_AGENT, StreamError("y", "Unavailable"), PacketType.DIAL_RSP)
    labels = [s[1] for s in m.samples()]
    assert {"segment": "to_agent", "code": "Unknown", "packet_type": "Unknown"} in labels
    assert {"segment": "from_agent", "code": "Unavailable", "packet_type": "DIAL_RSP"} in labels