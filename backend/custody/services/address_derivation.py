"""Deterministic receive-address derivation from account-level extended public keys.

Addresses are derived on the external chain (``xpub / 0 / index``) and never
involve private key material: private extended keys are rejected outright.
"""
from bip_utils import (
    Base58ChecksumError,
    Bech32ChecksumError,
    Bip32KeyError,
    Bip32KeyNetVersions,
    Bip32Slip10Secp256k1,
    EthAddrEncoder,
    P2PKHAddrDecoder,
    P2SHAddrDecoder,
    P2TRAddrDecoder,
    P2WPKHAddrDecoder,
    P2WPKHAddrEncoder,
)
from eth_utils import is_address

from custody.exceptions import InvalidKeyFormat

# SLIP-132 version bytes (public, private) keyed by extended key prefix
_KEY_NET_VERSIONS = {
    "xpub": Bip32KeyNetVersions(b"\x04\x88\xb2\x1e", b"\x04\x88\xad\xe4"),
    "ypub": Bip32KeyNetVersions(b"\x04\x9d\x7c\xb2", b"\x04\x9d\x78\x78"),
    "zpub": Bip32KeyNetVersions(b"\x04\xb2\x47\x46", b"\x04\xb2\x43\x0c"),
    "tpub": Bip32KeyNetVersions(b"\x04\x35\x87\xcf", b"\x04\x35\x83\x94"),
    "upub": Bip32KeyNetVersions(b"\x04\x4a\x52\x62", b"\x04\x4a\x4e\x28"),
    "vpub": Bip32KeyNetVersions(b"\x04\x5f\x1c\xf6", b"\x04\x5f\x18\xbc"),
}

_BTC_NETWORKS = {
    "mainnet": {"hrp": "bc", "p2pkh": b"\x00", "p2sh": b"\x05"},
    "testnet": {"hrp": "tb", "p2pkh": b"\x6f", "p2sh": b"\xc4"},
}

_ADDRESS_DECODE_ERRORS = (ValueError, TypeError, Base58ChecksumError, Bech32ChecksumError)


def _load_public_node(xpub: str) -> Bip32Slip10Secp256k1:
    if not xpub or not isinstance(xpub, str):
        raise InvalidKeyFormat("Extended public key is required")

    net_ver = _KEY_NET_VERSIONS.get(xpub[:4])
    if net_ver is None:
        raise InvalidKeyFormat(f"Unsupported extended key prefix '{xpub[:4]}'")

    try:
        node = Bip32Slip10Secp256k1.FromExtendedKey(xpub, net_ver)
    except (Bip32KeyError, Base58ChecksumError, ValueError) as e:
        raise InvalidKeyFormat(f"Could not parse extended public key: {e}") from e

    if not node.IsPublicOnly():
        raise InvalidKeyFormat("Private extended keys are not accepted")
    return node


def derive_address(xpub: str, index: int, family: str = "evm", network: str = "mainnet") -> str:
    """Derive the receive address at ``index`` under ``xpub``.

    ``family`` selects the encoding: ``"evm"`` gives an EIP-55 ``0x`` address,
    ``"btc"`` a native SegWit (P2WPKH) address for ``network``.
    Raises ``InvalidKeyFormat`` instead of ever returning a placeholder.
    """
    if isinstance(index, bool) or not isinstance(index, int) or index < 0 or index >= 2 ** 31:
        raise InvalidKeyFormat(f"Address index must be a non-hardened non-negative integer, got {index!r}")

    node = _load_public_node(xpub)
    try:
        child = node.ChildKey(0).ChildKey(index)
    except Bip32KeyError as e:
        raise InvalidKeyFormat(f"Derivation failed at index {index}: {e}") from e

    pub_key = child.PublicKey().RawCompressed().ToBytes()

    if family == "evm":
        return EthAddrEncoder.EncodeKey(pub_key)
    if family == "btc":
        params = _BTC_NETWORKS.get(network)
        if params is None:
            raise InvalidKeyFormat(f"Unknown BTC network '{network}'")
        return P2WPKHAddrEncoder.EncodeKey(pub_key, hrp=params["hrp"], wit_ver=0)
    raise InvalidKeyFormat(f"Unknown address family '{family}'")


def _is_btc_address(address: str, network: str) -> bool:
    params = _BTC_NETWORKS.get(network)
    if params is None:
        return False

    checks = (
        lambda: P2WPKHAddrDecoder.DecodeAddr(address, hrp=params["hrp"], wit_ver=0),
        lambda: P2TRAddrDecoder.DecodeAddr(address, hrp=params["hrp"]),
        lambda: P2PKHAddrDecoder.DecodeAddr(address, net_ver=params["p2pkh"]),
        lambda: P2SHAddrDecoder.DecodeAddr(address, net_ver=params["p2sh"]),
    )
    for check in checks:
        try:
            check()
            return True
        except _ADDRESS_DECODE_ERRORS:
            continue
    return False


def validate_address(family: str, address, network: str = "mainnet") -> bool:
    """Format/checksum check for a destination address. Never raises."""
    if not isinstance(address, str) or not address or address != address.strip():
        return False
    if family == "evm":
        return is_address(address)
    if family == "btc":
        return _is_btc_address(address, network)
    return False
