"""
Tests for quorumvault_core.host — signed request processing.

Covers:
  - Request hashing and argument flattening
  - Nonce sequencing and replay rejection
  - Signature checks on submit / confirm
  - Authenticated key setting and rotation
  - Persistence failures roll back the request
  - Open execution
  - Declare / deploy validation
"""

import sqlite3

import pytest

from quorumvault_core.crypto_utils import get_selector_from_name, hash_elements
from quorumvault_core.errors import (
    AlreadyConfirmed,
    InvalidCalldata,
    InvalidNonce,
    InvalidPublicKey,
    InvalidSignature,
    InvalidSignatureLength,
    NotOwner,
    PublicKeyNotSet,
    TxNotFound,
)
from quorumvault_core.host import (
    AccountHost,
    SignedRequest,
    compute_request_hash,
    flatten_args,
)
from quorumvault_core.storage import VaultStore
from quorumvault_core.wallet import Wallet

TARGET = 0x7A11E7
SELECTOR = 0x5E1EC7


class TestFlattenArgs:

    def test_scalars(self):
        assert flatten_args((1, "0x2", "3")) == [1, 2, 3]

    def test_bytes_are_length_prefixed(self):
        data = b"\x01" * 40
        out = flatten_args((data,))
        assert out[0] == 40
        assert out[1] == int.from_bytes(b"\x01" * 31, "big")
        assert out[2] == int.from_bytes(b"\x01" * 9, "big")

    def test_nested_sequence(self):
        assert flatten_args((5, [1, 2])) == [5, 2, 1, 2]

    def test_bad_element(self):
        with pytest.raises(ValueError):
            flatten_args((-1,))


class TestRequestHash:

    def test_matches_manual_hash(self):
        h = compute_request_hash("0x1", "0xa", "confirm_transaction", (3,), 0)
        expected = hash_elements([1, 0xA, get_selector_from_name("confirm_transaction"), 0, 3])
        assert h == expected

    def test_binds_every_field(self):
        base = compute_request_hash("0x1", "0xa", "confirm_transaction", (3,), 0)
        assert base != compute_request_hash("0x2", "0xa", "confirm_transaction", (3,), 0)
        assert base != compute_request_hash("0x1", "0xb", "confirm_transaction", (3,), 0)
        assert base != compute_request_hash("0x1", "0xa", "execute_transaction", (3,), 0)
        assert base != compute_request_hash("0x1", "0xa", "confirm_transaction", (4,), 0)
        assert base != compute_request_hash("0x1", "0xa", "confirm_transaction", (3,), 1)


class TestInvoke:

    def test_set_public_key_owner_only(self, host, dave):
        with pytest.raises(NotOwner):
            host.invoke(dave.sign_request(host, "set_public_key", (dave.public_key,)))
        assert host.get_nonce(dave.address) == 0

    def test_full_flow(self, keyed_host, alice, bob, dave, gateway):
        h = keyed_host
        tx_id = h.invoke(alice.sign_request(h, "submit_transaction", (TARGET, SELECTOR, [9])))
        assert tx_id == 1
        assert h.invoke(alice.sign_request(h, "confirm_transaction", (1,))) == 1
        assert h.invoke(bob.sign_request(h, "confirm_transaction", (1,))) == 2
        result = h.invoke(SignedRequest(dave.address, "execute_transaction", (1,)))
        assert result == (9).to_bytes(32, "big")
        assert h.account.get_transaction(1).executed
        assert h.get_nonce(dave.address) == 1

    def test_replayed_request_rejected(self, keyed_host, alice):
        req = alice.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, []))
        keyed_host.invoke(req)
        with pytest.raises(InvalidNonce):
            keyed_host.invoke(req)
        assert keyed_host.account.get_last_tx_id() == 1

    def test_future_nonce_rejected(self, keyed_host, alice):
        nonce = keyed_host.get_nonce(alice.address) + 1
        req = alice.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, []), nonce=nonce)
        with pytest.raises(InvalidNonce):
            keyed_host.invoke(req)

    def test_nonce_not_advanced_on_failure(self, keyed_host, alice):
        before = keyed_host.get_nonce(alice.address)
        with pytest.raises(TxNotFound):
            keyed_host.invoke(alice.sign_request(keyed_host, "confirm_transaction", (5,)))
        assert keyed_host.get_nonce(alice.address) == before

    def test_bad_signature(self, keyed_host, alice):
        req = alice.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, []))
        r, s = req.signature
        req.signature = (r ^ 1, s)
        with pytest.raises(InvalidSignature):
            keyed_host.invoke(req)
        assert keyed_host.account.get_last_tx_id() == 0

    def test_signature_length(self, keyed_host, alice):
        req = alice.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, []))
        req.signature = req.signature[:1]
        with pytest.raises(InvalidSignatureLength):
            keyed_host.invoke(req)

    def test_signature_bound_to_args(self, keyed_host, alice):
        req = alice.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, []))
        req.args = (TARGET + 1, SELECTOR, [])
        with pytest.raises(InvalidSignature):
            keyed_host.invoke(req)

    def test_someone_elses_signature(self, keyed_host, alice, bob):
        req = alice.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, []))
        forged = SignedRequest(bob.address, req.entrypoint, req.args, req.nonce, req.signature)
        with pytest.raises(InvalidSignature):
            keyed_host.invoke(forged)

    def test_submit_without_key(self, host, alice):
        with pytest.raises(PublicKeyNotSet):
            host.invoke(alice.sign_request(host, "submit_transaction", (TARGET, SELECTOR, [])))

    def test_state_error_propagates(self, keyed_host, alice):
        keyed_host.invoke(alice.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, [])))
        keyed_host.invoke(alice.sign_request(keyed_host, "confirm_transaction", (1,)))
        with pytest.raises(AlreadyConfirmed):
            keyed_host.invoke(alice.sign_request(keyed_host, "confirm_transaction", (1,)))

    def test_unknown_entrypoint(self, host, alice):
        with pytest.raises(InvalidCalldata):
            host.invoke(SignedRequest(alice.address, "drain", ()))

    def test_malformed_caller(self, host):
        with pytest.raises(InvalidCalldata):
            host.invoke(SignedRequest("alice", "execute_transaction", (1,)))

    def test_separate_hosts_separate_hashes(self, account, alice):
        a = AccountHost(account, address="0x1")
        b = AccountHost(account, address="0x2")
        assert a.request_hash(alice.address, "confirm_transaction", (1,), 0) != \
            b.request_hash(alice.address, "confirm_transaction", (1,), 0)


class TestSetPublicKeyAuthentication:

    def test_first_key_signed_with_itself(self, host, alice):
        host.invoke(alice.sign_request(host, "set_public_key", (alice.public_key,)))
        assert host.account.get_owner_public_key(alice.address) == alice.public_key
        assert host.get_nonce(alice.address) == 1

    def test_unsigned_foreign_key_rejected(self, host, alice, dave):
        req = SignedRequest(alice.address, "set_public_key", (dave.public_key,))
        with pytest.raises(InvalidPublicKey):
            host.invoke(req)
        assert host.account.get_owner_public_key(alice.address) == b""
        assert host.get_nonce(alice.address) == 0

    def test_unsigned_own_key_rejected(self, host, alice):
        req = SignedRequest(alice.address, "set_public_key", (alice.public_key,))
        with pytest.raises(InvalidSignatureLength):
            host.invoke(req)
        assert host.account.get_owner_public_key(alice.address) == b""

    def test_third_party_signature_rejected(self, host, alice, dave):
        args = (alice.public_key,)
        tx_hash = host.request_hash(alice.address, "set_public_key", args, 0)
        req = SignedRequest(alice.address, "set_public_key", args, 0, dave.sign_hash(tx_hash))
        with pytest.raises(InvalidSignature):
            host.invoke(req)
        assert host.account.get_owner_public_key(alice.address) == b""

    def test_failed_takeover_cannot_forge_submit(self, host, alice, dave):
        with pytest.raises(InvalidPublicKey):
            host.invoke(SignedRequest(alice.address, "set_public_key", (dave.public_key,)))
        args = (TARGET, SELECTOR, [])
        tx_hash = host.request_hash(alice.address, "submit_transaction", args, 0)
        forged = SignedRequest(alice.address, "submit_transaction", args, 0, dave.sign_hash(tx_hash))
        with pytest.raises(PublicKeyNotSet):
            host.invoke(forged)
        assert host.account.get_last_tx_id() == 0

    def test_existing_key_cannot_be_overwritten_by_third_party(self, keyed_host, alice, dave):
        nonce = keyed_host.get_nonce(alice.address)
        args = (dave.public_key,)
        with pytest.raises(InvalidSignatureLength):
            keyed_host.invoke(SignedRequest(alice.address, "set_public_key", args, nonce))
        tx_hash = keyed_host.request_hash(alice.address, "set_public_key", args, nonce)
        signed_by_dave = SignedRequest(alice.address, "set_public_key", args, nonce,
                                       dave.sign_hash(tx_hash))
        with pytest.raises(InvalidSignature):
            keyed_host.invoke(signed_by_dave)
        assert keyed_host.account.get_owner_public_key(alice.address) == alice.public_key
        assert keyed_host.get_nonce(alice.address) == nonce

    def test_rotation_signed_with_current_key(self, keyed_host, alice):
        rotated = Wallet.from_seed("alice-rotated-seed", address=alice.address, iterations=1000)
        keyed_host.invoke(alice.sign_request(keyed_host, "set_public_key", (rotated.public_key,)))
        assert keyed_host.account.get_owner_public_key(alice.address) == rotated.public_key

        stale = alice.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, []))
        with pytest.raises(InvalidSignature):
            keyed_host.invoke(stale)
        req = rotated.sign_request(keyed_host, "submit_transaction", (TARGET, SELECTOR, []))
        assert keyed_host.invoke(req) == 1

    def test_rotation_signed_with_new_key_rejected(self, keyed_host, alice):
        rotated = Wallet.from_seed("alice-rotated-seed", address=alice.address, iterations=1000)
        with pytest.raises(InvalidSignature):
            keyed_host.invoke(rotated.sign_request(keyed_host, "set_public_key",
                                                   (rotated.public_key,)))
        assert keyed_host.account.get_owner_public_key(alice.address) == alice.public_key

    def test_wrong_argument_count(self, host, alice):
        with pytest.raises(InvalidCalldata):
            host.invoke(alice.sign_request(host, "set_public_key", ()))
        assert host.get_nonce(alice.address) == 0


class FlakyStore(VaultStore):
    """VaultStore whose incremental writes fail while ``failing`` is set."""

    failing = False

    def save_changes(self, state, nonces=None):
        if self.failing:
            raise sqlite3.OperationalError("disk I/O error")
        super().save_changes(state, nonces)


class TestPersistenceFailure:

    @pytest.fixture
    def stored_host(self, account, tmp_path, alice, bob, carol):
        store = FlakyStore(str(tmp_path / "host.db"))
        host = AccountHost(account, address="0xfa017", store=store)
        for w in (alice, bob, carol):
            host.invoke(w.sign_request(host, "set_public_key", (w.public_key,)))
        yield host
        store.close()

    def test_closed_store_leaves_key_and_nonce_unchanged(self, host, tmp_path, alice):
        host.store = VaultStore(str(tmp_path / "closed.db"))
        host.store.close()
        with pytest.raises(sqlite3.ProgrammingError):
            host.invoke(alice.sign_request(host, "set_public_key", (alice.public_key,)))
        assert host.account.get_owner_public_key(alice.address) == b""
        assert host.get_nonce(alice.address) == 0

    def test_failed_submit_is_rolled_back(self, stored_host, alice):
        stored_host.store.failing = True
        req = alice.sign_request(stored_host, "submit_transaction", (TARGET, SELECTOR, [1]))
        with pytest.raises(sqlite3.OperationalError):
            stored_host.invoke(req)
        assert stored_host.account.get_last_tx_id() == 0
        assert stored_host.get_nonce(alice.address) == 1
        assert stored_host.account.sink.for_tx(1) == []

        stored_host.store.failing = False
        assert stored_host.invoke(req) == 1
        assert stored_host.store.load_call_record(1).payload == (1,)

    def test_failed_execute_stays_executable(self, stored_host, alice, bob, dave):
        h = stored_host
        h.invoke(alice.sign_request(h, "submit_transaction", (TARGET, SELECTOR, [9])))
        h.invoke(alice.sign_request(h, "confirm_transaction", (1,)))
        h.invoke(bob.sign_request(h, "confirm_transaction", (1,)))

        h.store.failing = True
        with pytest.raises(sqlite3.OperationalError):
            h.invoke(SignedRequest(dave.address, "execute_transaction", (1,)))
        assert not h.account.get_transaction(1).executed
        assert h.get_nonce(dave.address) == 0

        h.store.failing = False
        h.invoke(SignedRequest(dave.address, "execute_transaction", (1,)))
        assert h.store.load_call_record(1).executed

    def test_failed_declare_is_rolled_back(self, stored_host, alice):
        stored_host.store.failing = True
        req = alice.sign_request(stored_host, "__declare__", (0xC1A55,))
        with pytest.raises(sqlite3.OperationalError):
            stored_host.declare(req, 0xC1A55)
        assert stored_host.declared_classes == set()
        assert stored_host.store.load_declared_classes() == set()


class TestDeclareDeploy:

    def test_declare(self, keyed_host, alice):
        req = alice.sign_request(keyed_host, "__declare__", (0xC1A55,))
        assert keyed_host.declare(req, 0xC1A55) == "VALID"
        assert 0xC1A55 in keyed_host.declared_classes

    def test_declare_bad_signature(self, keyed_host, alice):
        req = alice.sign_request(keyed_host, "__declare__", (0xC1A55,))
        with pytest.raises(InvalidSignature):
            keyed_host.declare(req, 0xC1A56)
        assert keyed_host.declared_classes == set()

    def test_deploy(self, keyed_host, alice):
        args = (0xC1A55, 0x5A17, alice.public_key)
        req = alice.sign_request(keyed_host, "__deploy__", args)
        deployment = keyed_host.deploy(req, *args)
        assert deployment.deployer == alice.address
        assert deployment.to_dict()["salt"] == "0x5a17"
        assert keyed_host.deployments == [deployment]

    def test_deploy_non_owner(self, keyed_host, dave):
        args = (0xC1A55, 0x5A17, dave.public_key)
        req = dave.sign_request(keyed_host, "__deploy__", args)
        with pytest.raises(NotOwner):
            keyed_host.deploy(req, *args)
