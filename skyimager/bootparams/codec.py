"""Boot parameter encoding inside disk images.

Boot parameters are stored in the boot-code area of the image's MBR, where
the board's first-boot scripts read them back. The area starts at offset
0x0E and is 216 bytes long; partition entries and the boot signature are
left untouched.

Layout (big-endian, zero padded to 216 bytes):

    magic        5  b"SKYBP"
    version      1
    mode         1  0 = visor, 1 = hypervisor
    index        1  visor index, 0xFF for the hypervisor
    local_ip     4
    gateway_ip   4
    local_sk    32
    pk_count     1
    pks         33 * pk_count
    hostname     1 + n  (length prefixed, utf-8)
    passcode     1 + n  (length prefixed, utf-8)
"""

from __future__ import annotations

import struct
from ipaddress import IPv4Address
from pathlib import Path

from skyimager.bootparams.keys import PUBLIC_KEY_SIZE, SECRET_KEY_SIZE, public_key
from skyimager.bootparams.models import HYPERVISOR, BootParams
from skyimager.errors import CodecError
from skyimager.types import ParamsMode

SECTOR_SIZE = 512
PARAMS_OFFSET = 0x0E
PARAMS_SIZE = 216

MAGIC = b"SKYBP"
VERSION = 1
HYPERVISOR_INDEX = 0xFF

_HEADER = struct.Struct(">5sBBB4s4s32sB")

_MODES = {ParamsMode.VISOR: 0, ParamsMode.HYPERVISOR: 1}
_MODES_BY_CODE = {v: k for k, v in _MODES.items()}


def _pack_str(value: str, field: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > 0xFF:
        raise CodecError(f"{field} is too long to encode ({len(raw)} bytes)")
    return bytes([len(raw)]) + raw


def encode(params: BootParams) -> bytes:
    """Encode boot parameters into the fixed-size MBR blob.

    Raises:
        CodecError: If a field is malformed or the result does not fit.
    """
    if params.index == HYPERVISOR:
        index = HYPERVISOR_INDEX
    elif isinstance(params.index, int) and 0 <= params.index < HYPERVISOR_INDEX:
        index = params.index
    else:
        raise CodecError(f"Cannot encode boot parameter index {params.index!r}")

    try:
        sk = bytes.fromhex(params.local_sk)
        pks = [bytes.fromhex(pk) for pk in params.hypervisor_pks]
    except ValueError as e:
        raise CodecError(f"Malformed key in boot parameters: {e}") from e
    if len(sk) != SECRET_KEY_SIZE:
        raise CodecError(f"Secret key must be {SECRET_KEY_SIZE} bytes")
    if any(len(pk) != PUBLIC_KEY_SIZE for pk in pks):
        raise CodecError(f"Public keys must be {PUBLIC_KEY_SIZE} bytes")
    if len(pks) > 0xFF:
        raise CodecError("Too many hypervisor public keys")

    blob = _HEADER.pack(
        MAGIC,
        VERSION,
        _MODES[params.mode],
        index,
        params.local_ip.packed,
        params.gateway_ip.packed,
        sk,
        len(pks),
    )
    blob += b"".join(pks)
    blob += _pack_str(params.hostname, "hostname")
    blob += _pack_str(params.passcode, "passcode")

    if len(blob) > PARAMS_SIZE:
        raise CodecError(
            f"Boot parameters need {len(blob)} bytes, only {PARAMS_SIZE} available"
        )
    return blob.ljust(PARAMS_SIZE, b"\x00")


def _unpack_str(blob: bytes, pos: int) -> tuple[str, int]:
    length = blob[pos]
    end = pos + 1 + length
    if end > len(blob):
        raise CodecError("Truncated string field in boot parameters")
    return blob[pos + 1 : end].decode("utf-8"), end


def decode(blob: bytes) -> BootParams:
    """Decode boot parameters from an MBR blob.

    Raises:
        CodecError: If the blob does not hold valid boot parameters.
    """
    if len(blob) < _HEADER.size:
        raise CodecError("Boot parameter blob is too short")

    try:
        magic, version, mode, index, local_ip, gateway_ip, sk, count = (
            _HEADER.unpack_from(blob)
        )
        if magic != MAGIC:
            raise CodecError("No boot parameters found (bad magic)")
        if version != VERSION:
            raise CodecError(f"Unsupported boot parameter version {version}")
        if mode not in _MODES_BY_CODE:
            raise CodecError(f"Unknown boot parameter mode {mode}")

        pos = _HEADER.size
        pks: list[str] = []
        for _ in range(count):
            pk = blob[pos : pos + PUBLIC_KEY_SIZE]
            if len(pk) != PUBLIC_KEY_SIZE:
                raise CodecError("Truncated public key in boot parameters")
            pks.append(pk.hex())
            pos += PUBLIC_KEY_SIZE

        hostname, pos = _unpack_str(blob, pos)
        passcode, pos = _unpack_str(blob, pos)
        pk = public_key(sk).hex()
    except (IndexError, UnicodeDecodeError, ValueError, struct.error) as e:
        raise CodecError(f"Corrupt boot parameters: {e}") from e

    return BootParams(
        index=HYPERVISOR if index == HYPERVISOR_INDEX else index,
        mode=_MODES_BY_CODE[mode],
        local_ip=IPv4Address(local_ip),
        gateway_ip=IPv4Address(gateway_ip),
        hostname=hostname,
        passcode=passcode,
        local_sk=sk.hex(),
        local_pk=pk,
        hypervisor_pks=tuple(pks),
    )


def write_params(image_path: Path, params: BootParams) -> None:
    """Write boot parameters into the MBR of a disk image in place.

    Raises:
        CodecError: If the image is too small or parameters do not encode.
        OSError: If the image cannot be written.
    """
    blob = encode(params)
    if image_path.stat().st_size < SECTOR_SIZE:
        raise CodecError(f"{image_path} is smaller than one sector")
    with image_path.open("r+b") as f:
        f.seek(PARAMS_OFFSET)
        f.write(blob)


def read_params(image_path: Path) -> BootParams:
    """Read boot parameters back from a disk image.

    Raises:
        CodecError: If the image holds no valid boot parameters.
        OSError: If the image cannot be read.
    """
    with image_path.open("rb") as f:
        f.seek(PARAMS_OFFSET)
        blob = f.read(PARAMS_SIZE)
    return decode(blob)


__all__ = [
    "PARAMS_OFFSET",
    "PARAMS_SIZE",
    "SECTOR_SIZE",
    "decode",
    "encode",
    "read_params",
    "write_params",
]
