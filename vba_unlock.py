#!/usr/bin/env python3
"""VBA project password inspector and remover for Excel workbooks.

This script reads the protection record of the VBA project stored inside an
Excel XLS, XLSM or XLSB file, reports the password hash and salt, can look the
password up in a wordlist, and can rewrite the workbook so the VBA editor no
longer asks for a password.

    # Show usage:
    python vba_unlock.py --help

    # Report the protection state and try a wordlist against the hash:
    python vba_unlock.py read --decode --wordlist passwords.lst Book.xlsm

    # Write Book_unlocked.xlsm next to the original:
    python vba_unlock.py remove Book.xlsm

    # Patch the workbook in place:
    python vba_unlock.py remove --in-place Book.xls

The compound file is patched byte-for-byte in place: only the sectors holding
the PROJECT stream change, every other structure of the container is left
exactly as it was.
"""
from __future__ import annotations

import argparse
import enum
import hashlib
import io
import itertools
import logging
import os
import re
import struct
import sys
import tempfile
import zipfile
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

try:
    import olefile
    from olefile import (
        ENDOFCHAIN,
        FREESECT,
        MAGIC,
        MAXREGSECT,
        NOSTREAM,
        STGTY_ROOT,
        STGTY_STORAGE,
        STGTY_STREAM,
    )
except ImportError as exc:  # pragma: no cover - dependency guard
    raise SystemExit(
        "The 'olefile' package is required. Install it via 'pip install olefile'."
    ) from exc

logger = logging.getLogger("vba_unlock")

StreamPath = Union[str, Sequence[str]]

# Location of the VBA project inside each workbook flavour
ZIP_VBA_PATH = "xl/vbaProject.bin"
XLS_PROJECT_PATH = ("_VBA_PROJECT_CUR", "PROJECT")
BIN_PROJECT_PATH = ("PROJECT",)

DEFAULT_CODEPAGE = "cp1252"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UnlockError(Exception):
    """Base class for every failure reported by this module."""


class CorruptContainer(UnlockError):
    """The compound file header or directory cannot be trusted."""


class BrokenChain(CorruptContainer):
    """A sector chain loops, leaves the file or hits a reserved marker."""


class MissingRoot(CorruptContainer):
    """The directory has no root entry."""


class ChainTooShort(UnlockError):
    """A write would need more room than the existing chain provides."""


class StreamNotFound(UnlockError):
    """The requested storage/stream does not exist: no VBA project here."""


class RecordError(UnlockError):
    """The PROJECT stream protection values cannot be decoded."""


class RecordLengthMismatch(RecordError):
    """An encrypted value's declared length disagrees with its payload."""


class UnrecognizedScheme(RecordError):
    """The password value uses a layout this module does not implement."""


class NotExcelFile(UnlockError):
    pass


class NoVbaWorkbook(UnlockError):
    """XLSX workbooks never carry a VBA project."""


# ---------------------------------------------------------------------------
# Sector store: compound file header, FAT, MiniFAT and raw sectors
# ---------------------------------------------------------------------------

HEADER_SIZE = 512
HEADER_DIFAT_ENTRIES = 109
DIRECTORY_ENTRY_SIZE = 128


class SectorStore:
    """Sector-level view of a compound file held in memory.

    Sector ``n`` starts at byte ``(n + 1) * sector_size``. Chains are plain
    index lists resolved through the FAT (or the MiniFAT for mini sectors),
    so following a chain is array indexing with bounds checks.
    """

    def __init__(self, data: bytes):
        self.data = bytearray(data)
        if len(self.data) < HEADER_SIZE or self.data[:8] != MAGIC:
            raise CorruptContainer("Not a compound file (bad header signature)")

        (
            self.minor_version,
            self.major_version,
            byte_order,
            sector_shift,
            mini_sector_shift,
        ) = struct.unpack_from("<HHHHH", self.data, 24)
        if byte_order != 0xFFFE:
            raise CorruptContainer(f"Unexpected byte order mark 0x{byte_order:04X}")
        if (self.major_version, sector_shift) not in ((3, 9), (4, 12)):
            raise CorruptContainer(
                f"Unsupported sector shift {sector_shift} for version {self.major_version}"
            )
        if mini_sector_shift != 6:
            raise CorruptContainer(f"Unsupported mini sector shift {mini_sector_shift}")

        self.sector_size = 1 << sector_shift
        self.mini_sector_size = 1 << mini_sector_shift
        (
            self.num_fat_sectors,
            self.first_dir_sector,
            _transaction,
            self.mini_stream_cutoff,
            self.first_minifat_sector,
            self.num_minifat_sectors,
            self.first_difat_sector,
            self.num_difat_sectors,
        ) = struct.unpack_from("<IIIIIIII", self.data, 44)
        self.sector_count = max(0, -(-(len(self.data) - self.sector_size) // self.sector_size))

        self.fat = self._load_fat()
        self.minifat: List[int] = []
        if self.num_minifat_sectors and self.first_minifat_sector != ENDOFCHAIN:
            self.minifat = self._unpack_ids(self.read_chain(self.first_minifat_sector))
        logger.debug(
            "CFB v%d: %d sectors of %d bytes, %d FAT entries, %d MiniFAT entries",
            self.major_version,
            self.sector_count,
            self.sector_size,
            len(self.fat),
            len(self.minifat),
        )

    # -- header tables ---------------------------------------------------
    @staticmethod
    def _unpack_ids(blob: bytes) -> List[int]:
        count = len(blob) // 4
        return list(struct.unpack_from(f"<{count}I", blob))

    def _difat(self) -> List[int]:
        """Return the FAT sector ids listed in the header and DIFAT sectors."""
        ids = list(struct.unpack_from(f"<{HEADER_DIFAT_ENTRIES}I", self.data, 76))
        per_sector = self.sector_size // 4 - 1
        current = self.first_difat_sector
        seen = set()
        while current not in (ENDOFCHAIN, FREESECT) and len(seen) < self.num_difat_sectors:
            if current in seen or current >= self.sector_count:
                raise BrokenChain(f"DIFAT chain is broken at sector {current}")
            seen.add(current)
            entries = self._unpack_ids(self.sector(current))
            ids.extend(entries[:per_sector])
            current = entries[per_sector]
        return ids[: self.num_fat_sectors]

    def _load_fat(self) -> List[int]:
        fat_sectors = self._difat()
        if not fat_sectors:
            raise CorruptContainer("Header lists no FAT sectors")
        if fat_sectors[0] >= self.sector_count:
            raise CorruptContainer(f"First FAT sector {fat_sectors[0]} is outside the file")
        fat: List[int] = []
        for sector_id in fat_sectors:
            if sector_id > MAXREGSECT or sector_id >= self.sector_count:
                raise CorruptContainer(f"FAT sector id {sector_id} is outside the file")
            fat.extend(self._unpack_ids(self.sector(sector_id)))
        return fat

    # -- sectors and chains ----------------------------------------------
    def sector_offset(self, sector_id: int) -> int:
        return (sector_id + 1) * self.sector_size

    def sector(self, sector_id: int) -> bytes:
        offset = self.sector_offset(sector_id)
        return bytes(self.data[offset : offset + self.sector_size])

    @staticmethod
    def _follow(start: int, table: List[int], limit: int, label: str) -> List[int]:
        chain: List[int] = []
        seen = set()
        current = start
        while current != ENDOFCHAIN:
            if current in seen:
                raise BrokenChain(f"{label} chain starting at {start} revisits sector {current}")
            if current > MAXREGSECT or current >= limit or current >= len(table):
                raise BrokenChain(f"{label} chain starting at {start} runs to invalid sector {current:#x}")
            seen.add(current)
            chain.append(current)
            current = table[current]
        return chain

    def chain(self, start: int) -> List[int]:
        return self._follow(start, self.fat, self.sector_count, "FAT")

    def minichain(self, start: int, mini_sector_count: int) -> List[int]:
        return self._follow(start, self.minifat, mini_sector_count, "MiniFAT")

    def read_chain(self, start: int) -> bytes:
        return b"".join(self.sector(sector_id) for sector_id in self.chain(start))

    def write_chain(self, start: int, payload: bytes) -> None:
        """Overwrite the leading bytes of an existing chain; never grows it."""
        sectors = self.chain(start)
        capacity = len(sectors) * self.sector_size
        if len(payload) > capacity:
            raise ChainTooShort(
                f"{len(payload)} bytes do not fit the {capacity} byte chain at sector {start}"
            )
        for index, sector_id in enumerate(sectors):
            piece = payload[index * self.sector_size : (index + 1) * self.sector_size]
            if not piece:
                break
            offset = self.sector_offset(sector_id)
            self.data[offset : offset + len(piece)] = piece

    def serialize(self) -> bytes:
        return bytes(self.data)


# ---------------------------------------------------------------------------
# Directory: entry tree and stream handles
# ---------------------------------------------------------------------------

@dataclass
class DirectoryEntry:
    sid: int
    name: str
    entry_type: int
    left: int
    right: int
    child: int
    start: int
    size: int


class StreamHandle:
    """Read/write access to one stream, regular or mini."""

    def __init__(self, directory: "Directory", entry: DirectoryEntry):
        self.directory = directory
        self.entry = entry

    @property
    def is_mini(self) -> bool:
        return self.entry.size < self.directory.store.mini_stream_cutoff

    def _mini_offsets(self) -> List[int]:
        """Absolute file offsets of the stream's mini sectors."""
        store = self.directory.store
        mini_size = store.mini_sector_size
        per_sector = store.sector_size // mini_size
        host = self.directory.mini_stream_sectors
        offsets = []
        for mini_id in store.minichain(self.entry.start, len(host) * per_sector):
            sector_id = host[mini_id // per_sector]
            offsets.append(store.sector_offset(sector_id) + (mini_id % per_sector) * mini_size)
        return offsets

    def read(self) -> bytes:
        store = self.directory.store
        if self.entry.size == 0:
            return b""
        if self.is_mini:
            mini_size = store.mini_sector_size
            data = b"".join(
                bytes(store.data[offset : offset + mini_size]) for offset in self._mini_offsets()
            )
        else:
            data = store.read_chain(self.entry.start)
        if len(data) < self.entry.size:
            raise BrokenChain(
                f"Stream {self.entry.name!r} declares {self.entry.size} bytes but its chain holds {len(data)}"
            )
        return data[: self.entry.size]

    def write(self, payload: bytes) -> None:
        """Overwrite the stream content in place. The declared size is kept."""
        store = self.directory.store
        if len(payload) > self.entry.size:
            raise ChainTooShort(
                f"{len(payload)} bytes do not fit stream {self.entry.name!r} of {self.entry.size} bytes"
            )
        if not payload:
            return
        if not self.is_mini:
            store.write_chain(self.entry.start, payload)
            return
        mini_size = store.mini_sector_size
        offsets = self._mini_offsets()
        if len(payload) > len(offsets) * mini_size:
            raise ChainTooShort(f"Mini chain of stream {self.entry.name!r} is too short")
        for index, offset in enumerate(offsets):
            piece = payload[index * mini_size : (index + 1) * mini_size]
            if not piece:
                break
            store.data[offset : offset + len(piece)] = piece


class Directory:
    """Parse the directory sectors and resolve stream paths."""

    def __init__(self, store: SectorStore):
        self.store = store
        raw = store.read_chain(store.first_dir_sector)
        self.entries: List[DirectoryEntry] = []
        for sid in range(len(raw) // DIRECTORY_ENTRY_SIZE):
            self.entries.append(self._parse_entry(sid, raw[sid * DIRECTORY_ENTRY_SIZE :]))
        if not self.entries or self.entries[0].entry_type != STGTY_ROOT:
            raise MissingRoot("Directory has no root entry")
        self.root = self.entries[0]
        self.mini_stream_sectors: List[int] = []
        if self.root.size and self.root.start != ENDOFCHAIN:
            self.mini_stream_sectors = store.chain(self.root.start)
        logger.debug("Directory holds %d entries", len(self.entries))

    def _parse_entry(self, sid: int, raw: bytes) -> DirectoryEntry:
        name_length, entry_type = struct.unpack_from("<HB", raw, 64)
        left, right, child = struct.unpack_from("<III", raw, 68)
        start, size = struct.unpack_from("<IQ", raw, 116)
        name_length = min(max(name_length - 2, 0), 62)
        name = raw[:name_length].decode("utf-16-le", errors="replace")
        if self.store.major_version == 3:
            size &= 0xFFFFFFFF
        return DirectoryEntry(sid, name, entry_type, left, right, child, start, size)

    def children(self, parent: DirectoryEntry) -> List[DirectoryEntry]:
        """Entries reachable from ``parent.child`` through sibling links."""
        found: List[DirectoryEntry] = []
        pending = [parent.child]
        seen = set()
        while pending:
            sid = pending.pop()
            if sid == NOSTREAM:
                continue
            if sid in seen or sid >= len(self.entries):
                raise CorruptContainer(f"Directory tree is broken at entry {sid}")
            seen.add(sid)
            entry = self.entries[sid]
            found.append(entry)
            pending.extend((entry.left, entry.right))
        return found

    @staticmethod
    def _split(path: StreamPath) -> List[str]:
        if isinstance(path, str):
            return [part for part in path.split("/") if part]
        return list(path)

    def _lookup(self, path: StreamPath) -> Optional[DirectoryEntry]:
        node = self.root
        for name in self._split(path):
            if node.entry_type not in (STGTY_ROOT, STGTY_STORAGE):
                return None
            wanted = name.upper()
            node = next((e for e in self.children(node) if e.name.upper() == wanted), None)
            if node is None:
                return None
        return node

    def exists(self, path: StreamPath) -> bool:
        entry = self._lookup(path)
        return entry is not None and entry.entry_type == STGTY_STREAM

    def find_stream(self, path: StreamPath) -> StreamHandle:
        entry = self._lookup(path)
        if entry is None or entry.entry_type != STGTY_STREAM:
            raise StreamNotFound(f"Stream {'/'.join(self._split(path))!r} not found")
        return StreamHandle(self, entry)

    def listdir(self) -> List[List[str]]:
        """Every stream path, depth first."""
        paths: List[List[str]] = []

        def walk(node: DirectoryEntry, prefix: List[str]) -> None:
            for entry in sorted(self.children(node), key=lambda e: e.name.upper()):
                if entry.entry_type == STGTY_STREAM:
                    paths.append(prefix + [entry.name])
                elif entry.entry_type == STGTY_STORAGE:
                    walk(entry, prefix + [entry.name])

        walk(self.root, [])
        return paths


# ---------------------------------------------------------------------------
# MS-OVBA data encryption (CMG, DPB and GC values of the PROJECT stream)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EncryptedValue:
    """Decrypted form of one obscured PROJECT value, keeping its key material."""

    seed: int
    project_key: int
    ignored: bytes
    data: bytes


def _crypt_stream(seed: int, project_key: int, plain: Iterable[int]) -> bytes:
    version_enc = seed ^ 2
    project_key_enc = seed ^ project_key
    out = bytearray((seed, version_enc, project_key_enc))
    unencrypted_1 = project_key
    encrypted_1 = project_key_enc
    encrypted_2 = version_enc
    for byte in plain:
        byte_enc = byte ^ ((encrypted_2 + unencrypted_1) & 0xFF)
        out.append(byte_enc)
        encrypted_2 = encrypted_1
        encrypted_1 = byte_enc
        unencrypted_1 = byte
    return bytes(out)


def encrypt_data(seed: int, project_key: int, data: bytes, ignored: Optional[bytes] = None) -> bytes:
    """Apply the MS-OVBA 2.4.3.2 encryption to ``data``.

    ``ignored`` supplies the filler bytes whose count is ``(seed & 6) >> 1``;
    when omitted a deterministic filler is used.
    """
    ignored_length = (seed & 6) >> 1
    if ignored is None:
        ignored = bytes(((i * 0x0F) ^ 0xA9) & 0xFF for i in range(ignored_length))
    if len(ignored) != ignored_length:
        raise ValueError(f"Seed 0x{seed:02X} needs {ignored_length} ignored bytes, got {len(ignored)}")
    plain = itertools.chain(ignored, struct.pack("<I", len(data)), data)
    return _crypt_stream(seed, project_key, plain)


def decrypt_data(raw: bytes) -> EncryptedValue:
    """Reverse MS-OVBA 2.4.3.3; the declared length must match the payload."""
    if len(raw) < 8:
        raise RecordError(f"Encrypted value {raw.hex()} is too short to decrypt")
    seed, version_enc, project_key_enc = raw[0], raw[1], raw[2]
    version = seed ^ version_enc
    if version != 2:
        raise RecordError(f"Data encryption version must be 2, not {version}")
    project_key = seed ^ project_key_enc
    ignored_length = (seed & 6) >> 1

    unencrypted_1 = project_key
    encrypted_1 = project_key_enc
    encrypted_2 = version_enc
    plain = bytearray()
    for byte_enc in raw[3:]:
        byte = byte_enc ^ ((encrypted_2 + unencrypted_1) & 0xFF)
        plain.append(byte)
        encrypted_2 = encrypted_1
        encrypted_1 = byte_enc
        unencrypted_1 = byte

    if len(plain) < ignored_length + 4:
        raise RecordError(f"Encrypted value {raw.hex()} is too short to hold its length")
    ignored = bytes(plain[:ignored_length])
    (declared,) = struct.unpack_from("<I", plain, ignored_length)
    data = bytes(plain[ignored_length + 4 :])
    if declared != len(data):
        raise RecordLengthMismatch(
            f"Declared length {declared} does not match the {len(data)} decrypted bytes"
        )
    return EncryptedValue(seed, project_key, ignored, data)


# ---------------------------------------------------------------------------
# Protection record codec
# ---------------------------------------------------------------------------

class ProjectProtection(enum.IntFlag):
    NONE = 0
    USER = 1
    HOST = 2
    VBE = 4


# Bits cleared when protection is removed; HOST is owned by the host application
UNLOCK_MASK = ProjectProtection.USER | ProjectProtection.VBE


class PasswordScheme(enum.Enum):
    LEGACY = "legacy"
    MODERN = "modern"


HASH_RESERVED = 0xFF
HASH_RECORD_SIZE = 29
SALT_SIZE = 4
DIGEST_SIZE = 20
# MS-OVBA hashes once; kept on the record so the digest stays reproducible
MODERN_ITERATIONS = 0

_VALUE_PATTERN = re.compile(rb'^(CMG|DPB|GC)="([^"\r\n]*)"', re.MULTILINE)
_NAME_PATTERN = re.compile(rb'^Name="([^"\r\n]*)"', re.MULTILINE)


@dataclass(frozen=True)
class EncodedField:
    """Where one protection value sits in the PROJECT stream."""

    start: int
    end: int
    raw: bytes
    envelope: EncryptedValue


@dataclass(frozen=True)
class ProtectionRecord:
    state: ProjectProtection
    scheme: PasswordScheme
    salt: bytes
    digest: bytes
    iteration_hint: int
    visible: bool
    name: str = ""
    codepage: str = DEFAULT_CODEPAGE
    source: bytes = field(default=b"", repr=False, compare=False)
    fields: Dict[str, EncodedField] = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_locked(self) -> bool:
        return bool(self.state & ProjectProtection.VBE)

    def unlocked(self) -> "ProtectionRecord":
        """Clear USER and VBE and make the project visible; DPB stays as is."""
        return replace(
            self,
            state=ProjectProtection(int(self.state) & ~int(UNLOCK_MASK)),
            visible=True,
        )


def decode_password_hash(data: bytes) -> Tuple[bytes, bytes]:
    """Split the 29 byte hashed password structure into (salt, digest).

    Salt and digest bytes flagged as null in the grbits are stored as 0x01.
    """
    if len(data) != HASH_RECORD_SIZE:
        raise RecordLengthMismatch(f"Password hash structure must be 29 bytes, not {len(data)}")
    if data[0] != HASH_RESERVED:
        raise UnrecognizedScheme(f"Reserved byte must be 0xFF, not 0x{data[0]:02X}")
    if data[-1] != 0x00:
        raise RecordError(f"Password hash terminator must be 0x00, not 0x{data[-1]:02X}")

    grbit_key = data[1] & 0x0F
    grbit_hash_null = (data[1] >> 4) | (data[2] << 4) | (data[3] << 12)
    salt = bytearray(data[4 : 4 + SALT_SIZE])
    digest = bytearray(data[8 : 8 + DIGEST_SIZE])
    for bits, buffer, label in ((grbit_key, salt, "salt"), (grbit_hash_null, digest, "hash")):
        for index in range(len(buffer)):
            if not (bits >> index) & 1:
                if buffer[index] != 0x01:
                    raise RecordError(f"Byte {index} of the {label} is flagged null but holds 0x{buffer[index]:02X}")
                buffer[index] = 0x00
    return bytes(salt), bytes(digest)


def encode_password_hash(salt: bytes, digest: bytes) -> bytes:
    if len(salt) != SALT_SIZE or len(digest) != DIGEST_SIZE:
        raise ValueError("Salt must be 4 bytes and digest 20 bytes")
    grbit_key = sum(1 << i for i, b in enumerate(salt) if b)
    grbit_hash_null = sum(1 << i for i, b in enumerate(digest) if b)
    out = bytearray((HASH_RESERVED,))
    out.append(((grbit_hash_null & 0x0F) << 4) | grbit_key)
    out.append((grbit_hash_null >> 4) & 0xFF)
    out.append((grbit_hash_null >> 12) & 0xFF)
    out += bytes(b or 0x01 for b in salt)
    out += bytes(b or 0x01 for b in digest)
    out.append(0x00)
    return bytes(out)


def _decode_password(data: bytes) -> Tuple[PasswordScheme, bytes, bytes]:
    if len(data) == HASH_RECORD_SIZE and data[0] == HASH_RESERVED:
        salt, digest = decode_password_hash(data)
        return PasswordScheme.MODERN, salt, digest
    if data and data[-1] == 0x00:
        return PasswordScheme.LEGACY, b"", data[:-1]
    raise UnrecognizedScheme(f"Password value {data.hex()} is neither hashed nor plain text")


def _encode_password(record: ProtectionRecord) -> bytes:
    if record.scheme is PasswordScheme.MODERN:
        return encode_password_hash(record.salt, record.digest)
    if record.salt:
        raise RecordError("Legacy passwords never carry a salt")
    return record.digest + b"\x00"


def decode_record(stream: bytes, codepage: str = DEFAULT_CODEPAGE) -> ProtectionRecord:
    """Decode the CMG, DPB and GC values of a PROJECT stream."""
    fields: Dict[str, EncodedField] = {}
    for match in _VALUE_PATTERN.finditer(stream):
        key = match.group(1).decode("ascii")
        if key in fields:
            continue
        text = match.group(2)
        try:
            raw = bytes.fromhex(text.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise RecordError(f"{key} value is not valid hex: {text!r}") from exc
        fields[key] = EncodedField(match.start(2), match.end(2), raw, decrypt_data(raw))
    missing = [key for key in ("CMG", "DPB", "GC") if key not in fields]
    if missing:
        raise RecordError(f"PROJECT stream lacks {', '.join(missing)}")

    cmg = fields["CMG"].envelope.data
    if len(cmg) != 4:
        raise RecordError(f"Protection state must decrypt to 4 bytes, not {len(cmg)}")
    (state,) = struct.unpack("<I", cmg)
    if state > 7:
        raise RecordError(f"Reserved protection state bits are set: 0x{state:08X}")

    gc = fields["GC"].envelope.data
    if len(gc) != 1 or gc[0] not in (0x00, 0xFF):
        raise RecordError(f"Visibility state must be 0x00 or 0xFF, got {gc.hex()}")

    scheme, salt, digest = _decode_password(fields["DPB"].envelope.data)
    name_match = _NAME_PATTERN.search(stream)
    name = name_match.group(1).decode(codepage, errors="replace") if name_match else ""
    return ProtectionRecord(
        state=ProjectProtection(state),
        scheme=scheme,
        salt=salt,
        digest=digest,
        iteration_hint=MODERN_ITERATIONS if scheme is PasswordScheme.MODERN else 0,
        visible=gc[0] == 0xFF,
        name=name,
        codepage=codepage,
        source=stream,
        fields=fields,
    )


def encode_record(record: ProtectionRecord) -> bytes:
    """Re-emit the PROJECT stream with the record's values.

    Each value is re-encrypted with its original seed, project key and ignored
    bytes; unchanged values keep their original text.
    """
    payloads = {
        "CMG": struct.pack("<I", int(record.state)),
        "DPB": _encode_password(record),
        "GC": b"\xff" if record.visible else b"\x00",
    }
    out = bytearray(record.source)
    for key, encoded in sorted(record.fields.items(), key=lambda item: item[1].start, reverse=True):
        envelope = encoded.envelope
        raw = encrypt_data(envelope.seed, envelope.project_key, payloads[key], envelope.ignored)
        if raw == encoded.raw:
            continue
        out[encoded.start : encoded.end] = raw.hex().upper().encode("ascii")
    return bytes(out)


# ---------------------------------------------------------------------------
# dir stream: code page lookup (adapted from oletools VBA_Project)
# ---------------------------------------------------------------------------

def _copytoken_help(decompressed_current: int, decompressed_chunk_start: int) -> Tuple[int, int, int]:
    """Compute CopyToken helper masks as defined in MS-OVBA 2.4.1.3.19.1."""
    difference = max(decompressed_current - decompressed_chunk_start, 1)
    bit_count = max((difference - 1).bit_length(), 4)
    length_mask = 0xFFFF >> bit_count
    offset_mask = ~length_mask
    return length_mask, offset_mask, bit_count


def decompress_stream(compressed: bytes) -> bytes:
    """Decompress a VBA compressed container (MS-OVBA 2.4.1)."""
    if not compressed:
        return b""
    if compressed[0] != 0x01:
        raise ValueError(f"Invalid compressed container signature 0x{compressed[0]:02X}")

    decompressed = bytearray()
    current = 1
    while current < len(compressed):
        chunk_start = current
        header = struct.unpack_from("<H", compressed, chunk_start)[0]
        chunk_size = (header & 0x0FFF) + 3
        chunk_flag = (header >> 15) & 0x01
        chunk_end = min(len(compressed), chunk_start + chunk_size)
        current = chunk_start + 2

        if chunk_flag == 0:
            literal_len = min(4096, max(0, chunk_end - current))
            decompressed += compressed[current : current + literal_len]
            current += literal_len
            continue

        decompressed_chunk_start = len(decompressed)
        while current < chunk_end:
            flag_byte = compressed[current]
            current += 1
            for bit_index in range(8):
                if current >= chunk_end:
                    break
                if not (flag_byte >> bit_index) & 1:
                    decompressed.append(compressed[current])
                    current += 1
                    continue
                copy_token = struct.unpack_from("<H", compressed, current)[0]
                length_mask, offset_mask, bit_count = _copytoken_help(
                    len(decompressed), decompressed_chunk_start
                )
                length = (copy_token & length_mask) + 3
                offset = ((copy_token & offset_mask) >> (16 - bit_count)) + 1
                source = len(decompressed) - offset
                for _ in range(length):
                    decompressed.append(decompressed[source])
                    source += 1
                current += 2
    return bytes(decompressed)


def resolve_codepage(cp_value: int) -> str:
    # Windows code page to Python codec translation; fall back to cp1252.
    if cp_value == 65001:
        return "utf-8"
    if cp_value == 0:
        return DEFAULT_CODEPAGE
    for candidate in (f"cp{cp_value}", f"windows-{cp_value}"):
        try:
            "".encode(candidate)
        except LookupError:
            continue
        else:
            return candidate
    return DEFAULT_CODEPAGE


def read_codepage(dir_data: bytes) -> str:
    """Return the codec named by PROJECTCODEPAGE in a decompressed dir stream."""
    buff = io.BytesIO(dir_data)
    while True:
        head = buff.read(6)
        if len(head) != 6:
            break
        record_id, size = struct.unpack("<HL", head)
        if record_id == 0x000F:  # PROJECTMODULES: no project records follow
            break
        payload = buff.read(size)
        if record_id == 0x0003 and len(payload) == 2:  # PROJECTCODEPAGE
            return resolve_codepage(struct.unpack("<H", payload)[0])
    return DEFAULT_CODEPAGE


def _project_codepage(directory: Directory, stream_path: StreamPath) -> str:
    dir_path = Directory._split(stream_path)[:-1] + ["VBA", "dir"]
    if not directory.exists(dir_path):
        return DEFAULT_CODEPAGE
    try:
        return read_codepage(decompress_stream(directory.find_stream(dir_path).read()))
    except (ValueError, IndexError, struct.error) as exc:
        logger.warning("Could not read the code page from the dir stream: %s", exc)
        return DEFAULT_CODEPAGE


# ---------------------------------------------------------------------------
# Hash engine and dictionary attack
# ---------------------------------------------------------------------------

def digest_for(
    scheme: PasswordScheme,
    salt: bytes,
    password: str,
    iterations: int = MODERN_ITERATIONS,
    codepage: str = DEFAULT_CODEPAGE,
) -> bytes:
    """Return the stored check value ``password`` would produce.

    LEGACY values are the password bytes themselves (the data encryption is
    the only transform applied). MODERN values are SHA1(password || salt),
    followed by ``iterations`` rounds of SHA1(previous || round index).
    """
    encoded = password.encode(codepage)
    if scheme is PasswordScheme.LEGACY:
        return encoded
    digest = hashlib.sha1(encoded + salt).digest()
    for round_index in range(iterations):
        digest = hashlib.sha1(digest + struct.pack("<I", round_index)).digest()
    return digest


def matches(record: ProtectionRecord, password: str) -> bool:
    try:
        candidate = digest_for(record.scheme, record.salt, password, record.iteration_hint, record.codepage)
    except UnicodeEncodeError:
        return False
    return candidate == record.digest


def _first_match(record: ProtectionRecord, batch: List[str]) -> Optional[str]:
    for candidate in batch:
        if matches(record, candidate):
            return candidate
    return None


def _batches(candidates: Iterable[str], size: int) -> Iterator[List[str]]:
    iterator = iter(candidates)
    while True:
        batch = list(itertools.islice(iterator, size))
        if not batch:
            return
        yield batch


def crack(
    record: ProtectionRecord,
    candidates: Iterable[str],
    workers: int = 1,
    batch_size: int = 20000,
) -> Optional[str]:
    """Return the first candidate that reproduces the record's digest.

    With ``workers > 1`` batches are checked in a process pool; the first
    batch (in submission order) holding a match decides the answer and the
    remaining batches are cancelled.
    """
    if workers <= 1:
        return _first_match(record, candidates)

    with ProcessPoolExecutor(max_workers=workers) as pool:
        pending = []
        batches = _batches(candidates, batch_size)
        for batch in itertools.islice(batches, workers * 2):
            pending.append(pool.submit(_first_match, record, batch))
        while pending:
            found = pending.pop(0).result()
            if found is not None:
                for future in pending:
                    future.cancel()
                return found
            batch = next(batches, None)
            if batch is not None:
                pending.append(pool.submit(_first_match, record, batch))
    return None


def iter_wordlist(path: str) -> Iterator[str]:
    """Yield trimmed, non-empty lines of a UTF-8 wordlist."""
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            word = line.strip()
            if word:
                yield word


# ---------------------------------------------------------------------------
# Inspection and patching of a compound file image
# ---------------------------------------------------------------------------

@dataclass
class ProjectReport:
    """Consumer-facing summary of a VBA project's protection."""

    name: str
    codepage: str
    state: ProjectProtection
    locked: bool
    visible: bool
    scheme: PasswordScheme
    salt: str
    digest: str
    password: Optional[str] = None
    cracked: bool = False

    @property
    def has_password(self) -> bool:
        return self.scheme is PasswordScheme.MODERN or bool(self.digest)


def load_record(container: bytes, stream_path: StreamPath) -> ProtectionRecord:
    directory = Directory(SectorStore(container))
    stream = directory.find_stream(stream_path).read()
    return decode_record(stream, _project_codepage(directory, stream_path))


def inspect_project(
    container: bytes,
    stream_path: StreamPath,
    candidates: Optional[Iterable[str]] = None,
    workers: int = 1,
) -> ProjectReport:
    record = load_record(container, stream_path)
    report = ProjectReport(
        name=record.name,
        codepage=record.codepage,
        state=record.state,
        locked=record.is_locked,
        visible=record.visible,
        scheme=record.scheme,
        salt=record.salt.hex(),
        digest=record.digest.hex(),
    )
    if record.scheme is PasswordScheme.LEGACY and record.digest:
        report.password = record.digest.decode(record.codepage, errors="replace")
    elif candidates is not None:
        report.password = crack(record, candidates, workers=workers)
        report.cracked = report.password is not None
    return report


def remove_protection(container: bytes, stream_path: StreamPath) -> bytes:
    """Return the container with the VBA project protection flags cleared and the
    project made visible.

    Only the bytes of the PROJECT stream change; a project that is not locked
    is returned unchanged.
    """
    store = SectorStore(container)
    directory = Directory(store)
    handle = directory.find_stream(stream_path)
    original = handle.read()
    record = decode_record(original, _project_codepage(directory, stream_path))
    if not record.is_locked:
        logger.info("VBA project is not locked; nothing to change")
        return bytes(container)

    payload = encode_record(record.unlocked())
    if len(payload) != len(original):
        raise ChainTooShort(
            f"Re-encoded PROJECT stream is {len(payload)} bytes, expected {len(original)}"
        )
    handle.write(payload)
    logger.info("Cleared protection state %s of project %r", record.state, record.name)
    return store.serialize()


# ---------------------------------------------------------------------------
# Workbook processing
# ---------------------------------------------------------------------------

XLS_KIND = "xls"
ZIP_KIND = "zip"


def detect_workbook_kind(path: str) -> str:
    """Classify a workbook by extension, confirmed by its magic bytes."""
    extension = os.path.splitext(path)[1].lower()
    if extension == ".xlsx":
        raise NoVbaWorkbook(f"{path} is an XLSX workbook, which never holds VBA")
    if extension == ".xls":
        if not olefile.isOleFile(path):
            raise NotExcelFile(f"{path} is not an OLE compound file")
        return XLS_KIND
    if extension in (".xlsm", ".xlsb"):
        if not zipfile.is_zipfile(path):
            raise NotExcelFile(f"{path} is not a zip archive")
        return ZIP_KIND
    raise NotExcelFile(f"{path} is not an Excel workbook")


def _read_container(path: str, kind: str) -> Tuple[bytes, Tuple[str, ...]]:
    if kind == XLS_KIND:
        with open(path, "rb") as handle:
            return handle.read(), XLS_PROJECT_PATH
    with zipfile.ZipFile(path, "r") as archive:
        names = {info.filename.lower(): info.filename for info in archive.infolist()}
        if ZIP_VBA_PATH.lower() not in names:
            raise StreamNotFound(f"{path} has no {ZIP_VBA_PATH}")
        return archive.read(names[ZIP_VBA_PATH.lower()]), BIN_PROJECT_PATH


def read_workbook(path: str, wordlist: Optional[str] = None, workers: int = 1) -> ProjectReport:
    kind = detect_workbook_kind(path)
    container, stream_path = _read_container(path, kind)
    candidates = iter_wordlist(wordlist) if wordlist else None
    return inspect_project(container, stream_path, candidates, workers=workers)


def unlocked_filename(path: str) -> str:
    root, ext = os.path.splitext(path)
    return f"{root}_unlocked{ext}"


def verify_unlocked(container: bytes, stream_path: Sequence[str]) -> bool:
    """Re-read the patched image with olefile and confirm it is unlocked."""
    ole = olefile.OleFileIO(io.BytesIO(container))
    try:
        stream = ole.openstream(list(stream_path)).read()
    finally:
        ole.close()
    return not decode_record(stream).is_locked


def unlock_workbook(path: str, output: Optional[str] = None, in_place: bool = False) -> str:
    """Write an unlocked copy of ``path`` and return where it went.

    The new file is assembled in a temporary file next to the target and
    moved over it only once complete.
    """
    kind = detect_workbook_kind(path)
    container, stream_path = _read_container(path, kind)
    patched = remove_protection(container, stream_path)
    if not verify_unlocked(patched, stream_path):
        raise CorruptContainer("Patched VBA project still reports protection")

    target = path if in_place else (output or unlocked_filename(path))
    fd, tmp_output = tempfile.mkstemp(
        prefix=".vba_unlock-", suffix=".tmp", dir=os.path.dirname(os.path.abspath(target))
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            if kind == XLS_KIND:
                handle.write(patched)
            else:
                with zipfile.ZipFile(path, "r") as zin, zipfile.ZipFile(handle, "w") as zout:
                    for item in zin.infolist():
                        data = zin.read(item.filename)
                        if item.filename.lower() == ZIP_VBA_PATH.lower():
                            data = patched
                        zout.writestr(item, data)
        os.replace(tmp_output, target)
    except BaseException:
        if os.path.exists(tmp_output):
            os.remove(tmp_output)
        raise
    return target


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def format_report(report: ProjectReport) -> List[str]:
    lines = [f"VBA project: {report.name or '(unnamed)'}"]
    lines.append("Project Protection State:")
    for label, flag in (("User", ProjectProtection.USER), ("Host", ProjectProtection.HOST), ("VBE", ProjectProtection.VBE)):
        lines.append(f"  {label} Protected: {bool(report.state & flag)}")
    lines.append(f"  Locked: {report.locked}")
    if report.scheme is PasswordScheme.MODERN:
        lines.append("Project Password: Hashed (SHA1)")
        lines.append(f"  Salt: {report.salt}")
        lines.append(f"  SHA1 Hash: {report.digest}")
    elif report.has_password:
        lines.append(f"Project Password: {report.password} (plain-text)")
    else:
        lines.append("Project Password: None")
    lines.append(f"Project Visibility: {'Visible' if report.visible else 'Not Visible'}")
    return lines


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect or remove VBA project passwords in Excel files")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log container parsing details")
    commands = parser.add_subparsers(dest="command", required=True)

    read = commands.add_parser("read", help="Report the VBA project protection")
    read.add_argument("workbook", help="Path to the .xls, .xlsm or .xlsb workbook")
    read.add_argument(
        "--decode",
        "-d",
        action="store_true",
        help="Look the SHA1 password hash up in a wordlist",
    )
    read.add_argument("--wordlist", "-w", help="UTF-8 wordlist, one password per line")
    read.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Worker processes for the wordlist search (default 1)",
    )

    remove = commands.add_parser("remove", help="Clear the VBA project protection")
    remove.add_argument("workbook", help="Path to the .xls, .xlsm or .xlsb workbook")
    remove.add_argument(
        "--in-place",
        "-i",
        action="store_true",
        dest="in_place",
        help="Overwrite the input file instead of creating a copy",
    )
    remove.add_argument(
        "--output",
        "-o",
        dest="output",
        help="Destination path (defaults to <workbook>_unlocked.<ext>)",
    )
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    """
    vba_unlock.py - Inspect or remove the VBA project password of an Excel workbook.
    usage: vba_unlock.py [-v] {read,remove} ...

    Exit status:
        0 on success, 2 for usage and file errors, 3 when the workbook has no
        VBA project, 4 when the VBA project cannot be decoded.
    """
    parser = build_arg_parser()
    if argv is None:
        args = parser.parse_args()
    else:
        args = parser.parse_args(list(argv))

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    source = os.path.abspath(args.workbook)
    if not os.path.exists(source):
        parser.error(f"File not found: {source}")

    try:
        if args.command == "read":
            if args.decode and not args.wordlist:
                parser.error("--decode requires --wordlist")
            if args.wordlist and not args.decode:
                parser.error("--wordlist is only used with --decode")
            report = read_workbook(source, wordlist=args.wordlist, workers=args.workers)
            for line in format_report(report):
                print(line)
            if args.decode and report.scheme is PasswordScheme.MODERN:
                if report.password is not None:
                    print(f"  Decoded Password: {report.password}")
                else:
                    print("  Was unable to decode the password. Try removing the password, which always works")
            return 0

        if args.in_place and args.output:
            parser.error("--output cannot be combined with --in-place")
        target = unlock_workbook(source, output=args.output, in_place=args.in_place)
        print(f"Unlocked workbook written to: {target}")
        return 0
    except (NoVbaWorkbook, StreamNotFound) as exc:
        print(f"No VBA project found: {exc}", file=sys.stderr)
        return 3
    except (NotExcelFile, OSError, zipfile.BadZipFile) as exc:
        print(f"Unable to process {source}: {exc}", file=sys.stderr)
        return 2
    except UnlockError as exc:
        print(f"Unable to decode the VBA project: {exc}", file=sys.stderr)
        return 4


if __name__ == "__main__":
    sys.exit(main())
