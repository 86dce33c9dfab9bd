"""Tests for the mDNS service record."""

import asyncio

import pytest

import discovery
from discovery import SERVICE_TYPE, ServiceAdvertiser


def test_txt_record_flags_authentication() -> None:
    assert ServiceAdvertiser("node", 8266, auth_required=True).properties()["auth_upload"] == "yes"
    assert ServiceAdvertiser("node", 8266, auth_required=False).properties()["auth_upload"] == "no"


def test_txt_record_carries_device_class() -> None:
    props = ServiceAdvertiser("node", 8266, auth_required=False, board="esp8266").properties()
    assert props == {
        "board": "esp8266",
        "tcp_check": "no",
        "ssh_upload": "no",
        "auth_upload": "no",
    }


def test_service_info_fields() -> None:
    advertiser = ServiceAdvertiser("bench node", 3232, auth_required=True, address="192.168.1.50")
    info = advertiser.build_info()
    assert info.type == SERVICE_TYPE
    assert info.name == f"bench node.{SERVICE_TYPE}"
    assert info.port == 3232
    assert info.properties[b"auth_upload"] == b"yes"
    assert info.parsed_addresses() == ["192.168.1.50"]
    assert info.server.endswith(".local.")


def test_stop_without_start_is_a_no_op() -> None:
    advertiser = ServiceAdvertiser("node", 8266, auth_required=False)
    asyncio.run(advertiser.stop())
    asyncio.run(advertiser.stop())
    assert not advertiser.active


class RecordingZeroconf:
    """Stands in for AsyncZeroconf and records every call made on it."""

    def __init__(self, calls, fail_register: bool = False) -> None:
        self.calls = calls
        self.fail_register = fail_register

    async def async_register_service(self, info, allow_name_change: bool = False):
        self.calls.append(("register", info.name))
        if self.fail_register:
            raise OSError("multicast not available")

        async def announce() -> None:
            self.calls.append(("announced", info.name))

        return asyncio.ensure_future(announce())

    async def async_unregister_all_services(self) -> None:
        self.calls.append(("unregister",))

    async def async_close(self) -> None:
        self.calls.append(("close",))


def test_start_publishes_and_stop_retracts(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(discovery, "AsyncZeroconf", lambda: RecordingZeroconf(calls))
    advertiser = ServiceAdvertiser("node", 8266, auth_required=True, address="127.0.0.1")

    async def scenario() -> None:
        await advertiser.start()
        assert advertiser.active
        await advertiser.stop()
        await advertiser.stop()

    asyncio.run(scenario())
    name = f"node.{SERVICE_TYPE}"
    assert calls == [("register", name), ("announced", name), ("unregister",), ("close",)]
    assert not advertiser.active


def test_stop_after_failed_start_closes_zeroconf(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(discovery, "AsyncZeroconf", lambda: RecordingZeroconf(calls, fail_register=True))
    advertiser = ServiceAdvertiser("node", 8266, auth_required=False, address="127.0.0.1")

    async def scenario() -> None:
        with pytest.raises(OSError):
            await advertiser.start()
        assert not advertiser.active
        await advertiser.stop()
        await advertiser.stop()

    asyncio.run(scenario())
    assert calls == [("register", f"node.{SERVICE_TYPE}"), ("close",)]


def test_advertiser_can_be_restarted_after_stop(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(discovery, "AsyncZeroconf", lambda: RecordingZeroconf(calls))
    advertiser = ServiceAdvertiser("node", 8266, auth_required=False, address="127.0.0.1")

    async def scenario() -> None:
        for _ in range(2):
            await advertiser.start()
            await advertiser.stop()

    asyncio.run(scenario())
    assert [call[0] for call in calls].count("register") == 2
    assert [call[0] for call in calls].count("close") == 2
