"""Tests for HD address and key derivation."""

import pickle

import pytest
from bip_utils import Bip39SeedGenerator, Bip44, Bip44Changes, Bip44Coins
from eth_account import Account

from custody.chains import Network
from custody.exceptions import ConfigurationError
from custody.hdwallet.keys import SecretKey
from custody.hdwallet.service import KeyDerivationService
from custody.hdwallet.tron import (
    is_valid_tron_address,
    tron_address_to_bytes,
    tron_address_to_hex,
)

from conftest import TEST_MNEMONIC

# m/44'/60'/0'/0/0 for the "abandon ... about" mnemonic
ETH_INDEX_0 = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"


def bip_utils_tron_address(index: int) -> str:
    seed = Bip39SeedGenerator(TEST_MNEMONIC).Generate()
    ctx = (
        Bip44.FromSeed(seed, Bip44Coins.TRON)
        .Purpose()
        .Coin()
        .Account(0)
        .Change(Bip44Changes.CHAIN_EXT)
        .AddressIndex(index)
    )
    return ctx.PublicKey().ToAddress()


class TestKeyDerivationService:
    """Tests for deterministic address derivation."""

    def test_known_ethereum_vector(self, keys):
        assert keys.derive_address(Network.ERC20, 0) == ETH_INDEX_0

    def test_derivation_paths(self, keys):
        assert keys.get_derivation_path(Network.ERC20, 7) == "m/44'/60'/0'/0/7"
        assert keys.get_derivation_path(Network.BEP20, 7) == "m/44'/60'/0'/0/7"
        assert keys.get_derivation_path(Network.TRC20, 7) == "m/44'/195'/0'/0/7"

    def test_evm_networks_share_address(self, keys):
        """ERC20 and BEP20 use the same key and therefore the same address."""
        for index in (1, 7, 1000):
            assert keys.derive_address(Network.ERC20, index) == keys.derive_address(
                Network.BEP20, index
            )

    def test_deterministic_across_instances(self, keys):
        other = KeyDerivationService(seed_phrase=TEST_MNEMONIC)
        for network in Network:
            assert other.derive_address(network, 42) == keys.derive_address(network, 42)

    def test_indices_give_distinct_addresses(self, keys):
        for network in (Network.ERC20, Network.TRC20):
            addresses = {keys.derive_address(network, i) for i in range(20)}
            assert len(addresses) == 20

    def test_tron_address_matches_bip_utils(self, keys):
        for index in (0, 1, 7):
            assert keys.derive_address(Network.TRC20, index) == bip_utils_tron_address(index)

    def test_tron_address_shape(self, keys):
        address = keys.derive_address(Network.TRC20, 7)
        assert address.startswith("T")
        assert len(address) == 34
        assert is_valid_tron_address(address)
        assert tron_address_to_hex(address).startswith("41")

    def test_derive_all_addresses_order(self, keys):
        infos = keys.derive_all_addresses(3)
        assert [i.network for i in infos] == [Network.TRC20, Network.ERC20, Network.BEP20]
        assert all(i.index == 3 for i in infos)
        assert infos[1].address == infos[2].address

    def test_negative_index_rejected(self, keys):
        with pytest.raises(ValueError):
            keys.derive_address(Network.ERC20, -1)

    def test_validate_address(self, keys):
        address = keys.derive_address(Network.ERC20, 5)
        assert keys.validate_address(address.lower(), Network.ERC20, 5)
        assert not keys.validate_address(address, Network.ERC20, 6)

    def test_validate_tron_address_is_case_sensitive(self, keys):
        address = keys.derive_address(Network.TRC20, 5)
        assert keys.validate_address(address, Network.TRC20, 5)
        assert not keys.validate_address(address.swapcase(), Network.TRC20, 5)
        assert not keys.validate_address(address.lower(), "TRC20", 5)

    def test_private_key_controls_address(self, keys):
        with keys.derive_private_key(Network.ERC20, 7) as key:
            assert Account.from_key(key.reveal()).address == keys.derive_address(Network.ERC20, 7)

    def test_missing_seed_rejected(self):
        with pytest.raises(ConfigurationError):
            KeyDerivationService(seed_phrase="")

    def test_invalid_mnemonic_not_echoed(self):
        bad = "abandon " * 11 + "abandon"
        with pytest.raises(ConfigurationError) as exc_info:
            KeyDerivationService(seed_phrase=bad)
        assert "abandon" not in str(exc_info.value)


class TestTronAddressCodec:
    """Tests for TRON base58check helpers."""

    def test_bad_checksum_rejected(self, keys):
        address = keys.derive_address(Network.TRC20, 1)
        tampered = address[:-1] + ("A" if address[-1] != "A" else "B")
        assert not is_valid_tron_address(tampered)

    def test_payload_is_21_bytes(self, keys):
        payload = tron_address_to_bytes(keys.derive_address(Network.TRC20, 1))
        assert len(payload) == 21
        assert payload[0] == 0x41


class TestSecretKey:
    """Tests for the opaque private key holder."""

    def test_repr_is_redacted(self, keys):
        key = keys.derive_private_key(Network.TRC20, 7)
        raw_hex = key.reveal().hex()
        assert raw_hex not in repr(key)
        assert raw_hex not in str(key)
        assert raw_hex not in f"{key}"
        assert "***" in repr(key)

    def test_cannot_be_pickled(self, keys):
        key = keys.derive_private_key(Network.ERC20, 1)
        with pytest.raises(TypeError):
            pickle.dumps(key)

    def test_cleared_on_context_exit(self, keys):
        with keys.derive_private_key(Network.ERC20, 1) as key:
            assert not key.is_cleared
        assert key.is_cleared
        with pytest.raises(ValueError):
            key.reveal()

    def test_wrong_length_rejected(self):
        with pytest.raises(ValueError):
            SecretKey(b"\x01" * 31)


def test_derive_command(capsys):
    from custody.__main__ import main

    assert main(["derive", "--index", "0"]) == 0

    out = capsys.readouterr().out
    assert ETH_INDEX_0 in out
    assert "m/44'/195'/0'/0/0" in out
    assert bip_utils_tron_address(0) in out
