import pytest
from eth_utils import is_checksum_address
from custody.exceptions import InvalidKeyFormat
from custody.services.address_derivation import derive_address, validate_address
from conftest import TEST_XPUB, TEST_XPRV


def test_derivation_is_deterministic():
    assert derive_address(TEST_XPUB, 7) == derive_address(TEST_XPUB, 7)
    assert derive_address(TEST_XPUB, 7, "btc") == derive_address(TEST_XPUB, 7, "btc")


def test_distinct_indices_give_distinct_addresses():
    evm = {derive_address(TEST_XPUB, i) for i in range(20)}
    btc = {derive_address(TEST_XPUB, i, "btc") for i in range(20)}
    assert len(evm) == 20
    assert len(btc) == 20


def test_evm_address_is_checksummed():
    address = derive_address(TEST_XPUB, 0)
    assert address.startswith("0x")
    assert len(address) == 42
    assert is_checksum_address(address)


def test_btc_address_is_native_segwit():
    assert derive_address(TEST_XPUB, 0, "btc").startswith("bc1q")
    assert derive_address(TEST_XPUB, 0, "btc", network="testnet").startswith("tb1q")


def test_same_key_different_family_share_no_encoding():
    assert derive_address(TEST_XPUB, 3, "evm") != derive_address(TEST_XPUB, 3, "btc")


@pytest.mark.parametrize("bad_key", ["", "xpub-not-a-key", "hello", TEST_XPUB[:-4] + "abcd"])
def test_unparsable_key_rejected(bad_key):
    with pytest.raises(InvalidKeyFormat):
        derive_address(bad_key, 0)


def test_private_key_rejected():
    with pytest.raises(InvalidKeyFormat):
        derive_address(TEST_XPRV, 0)


@pytest.mark.parametrize("index", [-1, 2 ** 31, 1.5, "3", True])
def test_invalid_index_rejected(index):
    with pytest.raises(InvalidKeyFormat):
        derive_address(TEST_XPUB, index)


def test_unknown_family_rejected():
    with pytest.raises(InvalidKeyFormat):
        derive_address(TEST_XPUB, 0, "sol")


def test_validate_evm_addresses():
    assert validate_address("evm", derive_address(TEST_XPUB, 1)) is True
    assert validate_address("evm", "0x" + "ab" * 20) is True
    assert validate_address("evm", "0x123") is False
    assert validate_address("evm", "not-an-address") is False
    assert validate_address("evm", None) is False


def test_validate_evm_rejects_bad_checksum():
    body = derive_address(TEST_XPUB, 2)[2:]
    pos = next(i for i, c in enumerate(body) if c.isalpha())
    tampered = body[:pos] + body[pos].swapcase() + body[pos + 1:]
    # All-lowercase or all-uppercase addresses carry no checksum
    if tampered not in (body.lower(), body.upper()):
        assert validate_address("evm", "0x" + tampered) is False


def test_validate_btc_addresses():
    assert validate_address("btc", derive_address(TEST_XPUB, 4, "btc")) is True
    assert validate_address("btc", "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq") is True
    assert validate_address("btc", "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa") is True
    assert validate_address("btc", "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdx") is False
    assert validate_address("btc", "0x" + "ab" * 20) is False
    assert validate_address("btc", "") is False


def test_validate_btc_network_mismatch():
    testnet = derive_address(TEST_XPUB, 0, "btc", network="testnet")
    assert validate_address("btc", testnet, network="testnet") is True
    assert validate_address("btc", testnet, network="mainnet") is False


def test_validate_unknown_family_is_false():
    assert validate_address("sol", "anything") is False
