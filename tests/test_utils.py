import re
import time

import pytest

from browser_pool.worker.utils import format_error, rewrite_loopback_host, utc_now_iso


@pytest.mark.parametrize(
    "endpoint",
    [
        "ws://localhost:3131/playwright/abc",
        "ws://127.0.0.1:3131/playwright/abc",
        "ws://0.0.0.0:3131/playwright/abc",
        "ws://[::1]:3131/playwright/abc",
    ],
)
def test_rewrites_loopback_hosts(endpoint):
    assert rewrite_loopback_host(endpoint, "worker") == "ws://worker:3131/playwright/abc"


def test_keeps_scheme_for_secure_endpoints():
    assert (
        rewrite_loopback_host("wss://localhost:443/playwright/abc", "worker")
        == "wss://worker:443/playwright/abc"
    )


def test_leaves_non_loopback_hosts_alone():
    endpoint = "ws://10.1.2.3:3131/playwright/abc"
    assert rewrite_loopback_host(endpoint, "worker") == endpoint


def test_does_not_touch_hosts_that_only_start_like_localhost():
    endpoint = "ws://localhost.example.com:3131/playwright/abc"
    assert rewrite_loopback_host(endpoint, "worker") == endpoint


def test_no_hostname_means_no_rewrite():
    endpoint = "ws://localhost:3131/playwright/abc"
    assert rewrite_loopback_host(endpoint, None) == endpoint
    assert rewrite_loopback_host(endpoint, "") == endpoint


def test_utc_now_iso_format_and_ordering():
    first = utc_now_iso()
    time.sleep(0.002)
    second = utc_now_iso()

    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", first)
    assert second > first


def test_format_error_carries_message_and_stack():
    try:
        raise RuntimeError("boom")
    except RuntimeError as e:
        info = format_error(e)

    assert info["message"] == "boom"
    assert info["type"] == "RuntimeError"
    assert "Traceback" in info["stack"]
    assert "boom" in info["stack"]
