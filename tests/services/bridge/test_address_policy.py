import pytest

from extbridge.services.bridge.address_policy import is_address_allowed, is_loopback, normalize_address


@pytest.mark.parametrize(
    "address",
    ["10.0.0.1", "10.255.255.254", "172.16.0.1", "172.31.255.1", "192.168.1.20", "100.64.0.1", "100.127.255.254"],
)
def test_private_ranges_allowed_under_private(address):
    assert is_address_allowed(address, "private")


@pytest.mark.parametrize("address", ["8.8.8.8", "172.32.0.1", "100.128.0.1", "192.169.0.1", "2001:db8::1"])
def test_public_addresses_denied_under_private(address):
    assert not is_address_allowed(address, "private")


def test_overlay_ipv6_prefix_is_private():
    assert is_address_allowed("fd7a:115c:a1e0::1234", "private")
    assert not is_address_allowed("fd7a:115c:a1e1::1", "private")


@pytest.mark.parametrize("policy", ["loopback", "private", "any"])
@pytest.mark.parametrize("address", ["127.0.0.1", "::1", "::ffff:127.0.0.1"])
def test_loopback_always_allowed(policy, address):
    assert is_address_allowed(address, policy)


@pytest.mark.parametrize("address", ["10.0.0.1", "192.168.0.5", "8.8.8.8", "127.0.0.2", "fd7a:115c:a1e0::1"])
def test_loopback_policy_denies_everything_else(address):
    assert not is_address_allowed(address, "loopback")


@pytest.mark.parametrize("address", ["8.8.8.8", "2001:db8::1", "testclient", ""])
def test_any_policy_allows_everything(address):
    assert is_address_allowed(address, "any")


def test_ipv4_mapped_ipv6_is_normalized():
    assert normalize_address("::ffff:192.168.1.7") == "192.168.1.7"
    assert is_address_allowed("::ffff:192.168.1.7", "private")
    assert not is_address_allowed("::ffff:8.8.8.8", "private")


def test_host_names_are_denied_under_private():
    assert not is_address_allowed("localhost.example", "private")
    assert not is_loopback("localhost")


def test_unknown_policy_raises():
    with pytest.raises(ValueError):
        is_address_allowed("10.0.0.1", "lan")
