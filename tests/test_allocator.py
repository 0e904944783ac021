"""Tests for deterministic naming and port allocation."""

from sandbox.allocator import (
    PORT_MAX,
    PORT_MIN,
    container_name,
    hash_code,
    next_port,
    port_for_thread,
    sanitize_name,
    short_digest,
    volume_name,
)


class TestHashCode:
    def test_known_values(self):
        assert hash_code("") == 0
        assert hash_code("abc") == 96354
        assert hash_code("hello") == 99162322

    def test_wraps_to_signed_32_bit(self):
        assert hash_code("polygenelubricants") == -(2**31)


class TestPorts:
    def test_port_is_deterministic(self):
        assert port_for_thread("C123:1700000000.000100") == port_for_thread("C123:1700000000.000100")

    def test_port_in_range(self):
        for thread_id in ["", "a", "abc", "polygenelubricants", "x" * 500, "thread-✓"]:
            assert PORT_MIN <= port_for_thread(thread_id) <= PORT_MAX

    def test_known_ports(self):
        assert port_for_thread("") == 10000
        assert port_for_thread("abc") == 50818
        assert port_for_thread("polygenelubricants") == 27600

    def test_next_port_increments(self):
        assert next_port(10000) == 10001
        assert next_port(50818) == 50819

    def test_next_port_wraps(self):
        assert next_port(65535) == 10000


class TestNames:
    def test_sanitize(self):
        assert sanitize_name("C123:1700.01") == "c123-1700-01"
        assert sanitize_name("Already_ok-1") == "already_ok-1"

    def test_safe_ids_keep_their_name(self):
        assert container_name("t1") == "threadbox-sandbox-t1"
        assert volume_name("t1") == "threadbox-workspace-t1"

    def test_rewritten_ids_carry_digest(self):
        assert container_name("T1") == f"threadbox-sandbox-t1-{short_digest('T1')}"
        assert volume_name("C1.2") == f"threadbox-workspace-c1-2-{short_digest('C1.2')}"

    def test_distinct_ids_never_share_names(self):
        ids = ["a.b", "a-b", "A-B", "a:b"]
        assert len({container_name(i) for i in ids}) == len(ids)
        assert len({volume_name(i) for i in ids}) == len(ids)

    def test_short_digest(self):
        assert short_digest("abc") == "00017862"
        assert short_digest("polygenelubricants") == "80000000"
