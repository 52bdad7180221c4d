import pytest

from upstream_sync.core.errors import BodyParseFailure
from upstream_sync.models.schemas import Address, ServerDescriptor
from upstream_sync.services.diff import servers_changed
from upstream_sync.services.serverlist import (
    format_server_line,
    parse_server_list,
    resolve_address,
    serialize_servers,
    split_host_port,
)


def _resolver(table):
    def resolve(host, port):
        if host not in table:
            raise ValueError(f"host not found: {host}")
        return tuple(Address(host=ip, port=port) for ip in table[host])
    return resolve


def test_two_servers_with_weight_and_down():
    body = "server 10.0.0.1:80 weight=2;\nserver 10.0.0.2:80 down;\n"
    servers = parse_server_list(body)

    assert [s.name for s in servers] == ["10.0.0.1:80", "10.0.0.2:80"]
    assert [s.weight for s in servers] == [2, 1]
    assert [s.down for s in servers] == [False, True]
    assert not any(s.backup for s in servers)
    assert servers[0].addrs == (Address(host="10.0.0.1", port=80),)


def test_defaults_for_options_not_given():
    (s,) = parse_server_list("server 10.0.0.1;")
    assert s.addrs == (Address(host="10.0.0.1", port=80),)
    assert (s.weight, s.max_fails, s.fail_timeout, s.max_conns) == (1, 1, 10, 0)


def test_all_options():
    (s,) = parse_server_list("server 10.0.0.1:8080 weight=5 max_fails=3 fail_timeout=1m30s max_conns=100 backup;")
    assert s.weight == 5
    assert s.max_fails == 3
    assert s.fail_timeout == 90
    assert s.max_conns == 100
    assert s.backup and not s.down


def test_last_line_without_newline_and_blank_lines():
    servers = parse_server_list("\n\nserver 10.0.0.1:80;\n   \nserver 10.0.0.2:80")
    assert len(servers) == 2


def test_bytes_body():
    servers = parse_server_list(b"server 10.0.0.1:80;\r\nserver 10.0.0.2:80;\r\n")
    assert [s.name for s in servers] == ["10.0.0.1:80", "10.0.0.2:80"]


def test_bad_lines_are_dropped_rest_is_kept():
    body = (
        "upstream 10.0.0.9:80;\n"
        "server 10.0.0.1:80;\n"
        "server 10.0.0.2:99999;\n"
        "server nosuch.invalid:80;\n"
        "server 10.0.0.3:80;\n"
    )
    servers = parse_server_list(body, resolver=_resolver({}))
    assert [s.name for s in servers] == ["10.0.0.1:80", "10.0.0.3:80"]


def test_unknown_option_is_ignored(caplog):
    (s,) = parse_server_list("server 10.0.0.1:80 slow_start=10s weight=3;")
    assert s.weight == 3
    assert "unknown server option slow_start=10s" in caplog.text


def test_invalid_option_values_keep_defaults():
    (s,) = parse_server_list("server 10.0.0.1:80 weight=0 max_fails=x fail_timeout=500ms;")
    assert s.weight == 1
    assert s.max_fails == 1
    assert s.fail_timeout == 10


def test_hostname_resolves_to_every_address():
    resolver = _resolver({"app.internal": ["10.1.0.1", "10.1.0.2"]})
    (s,) = parse_server_list("server app.internal:8080 weight=2;", resolver=resolver)
    assert s.name == "app.internal:8080"
    assert s.addrs == (Address(host="10.1.0.1", port=8080), Address(host="10.1.0.2", port=8080))


def test_ipv6_literal():
    (s,) = parse_server_list("server ::1;")
    assert s.addrs == (Address(host="::1", port=80),)
    assert s.addrs[0].name == "[::1]:80"


@pytest.mark.parametrize("body", ["", "\n\n", "garbage here\n", "server ;\nupstream x;\n"])
def test_no_valid_server_is_a_parse_failure(body):
    with pytest.raises(BodyParseFailure):
        parse_server_list(body, group="web")


def test_split_host_port():
    assert split_host_port("10.0.0.1") == ("10.0.0.1", 80)
    assert split_host_port("app:81") == ("app", 81)
    with pytest.raises(ValueError):
        split_host_port("app:http")
    with pytest.raises(ValueError):
        split_host_port(":80")


def test_resolve_ip_literal_without_lookup():
    assert resolve_address("127.0.0.1", 9000) == (Address(host="127.0.0.1", port=9000),)


def test_format_server_line():
    s = ServerDescriptor(
        name="10.0.0.1:80", addrs=(Address(host="10.0.0.1", port=80),),
        weight=2, max_fails=3, fail_timeout=30, max_conns=0, down=True,
    )
    assert format_server_line(s) == "server 10.0.0.1:80 weight=2 max_fails=3 fail_timeout=30s down;"

    s = s.model_copy(update={"max_conns": 7, "down": False, "backup": True})
    assert format_server_line(s) == "server 10.0.0.1:80 weight=2 max_fails=3 fail_timeout=30s max_conns=7 backup;"


def test_serialized_set_parses_back_unchanged():
    body = (
        "server 10.0.0.1:80 weight=2 max_conns=10;\n"
        "server 10.0.0.2:81 down;\n"
        "server 10.0.0.3:82 max_fails=0 fail_timeout=1h backup;\n"
    )
    servers = parse_server_list(body)
    text = serialize_servers(servers)

    assert text.endswith(";\n")
    assert len(text.splitlines()) == 3
    assert not servers_changed(servers, parse_server_list(text))
