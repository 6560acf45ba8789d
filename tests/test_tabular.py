"""Tests for vmmeter.tabular module."""

from __future__ import annotations

from vmmeter.tabular import parse_key_values, parse_table

VIRSH_LIST = """\
 Id   Name    State
-----------------------
 1    my vm   running
 -    other   shut off
"""


class TestParseTable:
    def test_virsh_list_all(self):
        rows = parse_table(VIRSH_LIST)
        assert rows == [
            {"Id": "1", "Name": "my vm", "State": "running"},
            {"Id": "-", "Name": "other", "State": "shut off"},
        ]

    def test_empty_output(self):
        assert parse_table("") == []
        assert parse_table("\n\n  \n") == []

    def test_header_only(self):
        assert parse_table(" Id   Name   State\n------------------\n") == []

    def test_missing_trailing_cells_are_empty(self):
        text = " Name   Source   Address\n------------------------\n vnet0   ipv4\n"
        assert parse_table(text) == [{"Name": "vnet0", "Source": "ipv4", "Address": ""}]

    def test_surplus_cells_dropped(self):
        text = " A   B\n------\n 1   2   3\n"
        assert parse_table(text) == [{"A": "1", "B": "2"}]

    def test_domifaddr(self):
        text = (
            " Name       MAC address          Protocol     Address\n"
            "-------------------------------------------------------------------------------\n"
            " vnet0      52:54:00:12:34:56    ipv4         192.168.122.10/24\n"
        )
        assert parse_table(text) == [
            {
                "Name": "vnet0",
                "MAC address": "52:54:00:12:34:56",
                "Protocol": "ipv4",
                "Address": "192.168.122.10/24",
            }
        ]


class TestParseKeyValues:
    def test_dominfo(self):
        text = "Id:             1\nName:           vm1\nState:          running\nMax memory:     2097152 KiB\n"
        values = parse_key_values(text)
        assert values["Name"] == "vm1"
        assert values["State"] == "running"
        assert values["Max memory"] == "2097152 KiB"

    def test_equals_separator(self):
        text = "Domain: 'vm1'\n  cpu.time=123456\n  cpu.user=1000\n  cpu.system=500\n"
        values = parse_key_values(text)
        assert values["cpu.user"] == "1000"
        assert values["cpu.system"] == "500"

    def test_splits_on_first_separator_only(self):
        assert parse_key_values("UUID: a:b:c")["UUID"] == "a:b:c"

    def test_lines_without_separator_ignored(self):
        assert parse_key_values("garbage\nkey: value\n") == {"key": "value"}

    def test_later_duplicate_wins(self):
        assert parse_key_values("k: 1\nk: 2\n") == {"k": "2"}

    def test_space_separator(self):
        values = parse_key_values("actual 1048576\nswap_in 0\nrss 524288\n", separators=":= ")
        assert values == {"actual": "1048576", "swap_in": "0", "rss": "524288"}
