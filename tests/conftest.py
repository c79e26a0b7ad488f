"""
Shared pytest fixtures for the QuorumVault test suite.

The standard scenario is a 2-of-3 vault owned by Alice, Bob and Carol,
with Dave as an outsider.
"""

import pytest

from quorumvault_core.account import MultisigAccount, RequestContext
from quorumvault_core.gateway import LocalGateway
from quorumvault_core.host import AccountHost
from quorumvault_core.wallet import Wallet

TARGET = 0x7A11E7
SELECTOR = 0x5E1EC7
FAST_KDF = 1_000


def make_wallet(seed: str) -> Wallet:
    """Deterministic wallet with a cheap KDF so tests stay fast."""
    return Wallet.from_seed(seed, iterations=FAST_KDF)


def echo(selector, payload):
    return b"".join(x.to_bytes(32, "big") for x in payload)


@pytest.fixture
def alice():
    return make_wallet("alice-fixture-seed")


@pytest.fixture
def bob():
    return make_wallet("bob-fixture-seed")


@pytest.fixture
def carol():
    return make_wallet("carol-fixture-seed")


@pytest.fixture
def dave():
    """Not an owner."""
    return make_wallet("dave-fixture-seed")


@pytest.fixture
def owners(alice, bob, carol):
    return [alice.address, bob.address, carol.address]


@pytest.fixture
def gateway():
    gw = LocalGateway()
    gw.register(TARGET, echo)
    return gw


@pytest.fixture
def account(owners, gateway):
    """Fresh 2-of-3 account; no owner has set a key yet."""
    return MultisigAccount(owners, 2, gateway=gateway)


@pytest.fixture
def keyed_account(account, alice, bob, carol):
    """2-of-3 account where every owner has declared its key."""
    for w in (alice, bob, carol):
        account.set_public_key(RequestContext(w.address), w.public_key)
    return account


@pytest.fixture
def host(account):
    return AccountHost(account, address="0xfa017")


@pytest.fixture
def keyed_host(host, alice, bob, carol):
    """Host whose owners have all set keys through signed requests."""
    for w in (alice, bob, carol):
        host.invoke(w.sign_request(host, "set_public_key", (w.public_key,)))
    return host
