"""
Build small version 3 or version 4 compound files for the tests.

Streams shorter than 4096 bytes are packed into the mini stream, longer ones
get their own sector chains, so a single image exercises both addressing
paths. Siblings are linked as a right-leaning chain sorted by the compound
file name order, which is a valid (if unbalanced) directory tree.

More than 109 FAT sectors spill into DIFAT sectors, as the format requires.
"""

import hashlib
import struct
from typing import Dict, List, Optional, Tuple

import vba_unlock

SECTOR = 512
MINI = 64
CUTOFF = 4096
HEADER_DIFAT = 109
ENDOFCHAIN = 0xFFFFFFFE
FREESECT = 0xFFFFFFFF
FATSECT = 0xFFFFFFFD
DIFSECT = 0xFFFFFFFC
NOSTREAM = 0xFFFFFFFF
MAGIC = b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1"

PROJECT_ID = '{5F0C0AF4-3F70-4E33-9D0A-2B0E7C2A1A11}'
SALT = bytes.fromhex("4a4d2a15")


def _entry(name: str, entry_type: int, left: int, right: int, child: int, start: int, size: int) -> bytes:
    raw = bytearray(128)
    if name:
        encoded = (name + "\0").encode("utf-16-le")
        raw[: len(encoded)] = encoded
        struct.pack_into("<HBB", raw, 64, len(encoded), entry_type, 1)
    struct.pack_into("<III", raw, 68, left, right, child)
    struct.pack_into("<IQ", raw, 116, start, size)
    return bytes(raw)


def build_compound_file(streams: Dict[Tuple[str, ...], bytes], sector_shift: int = 9) -> bytes:
    """Return a compound file image holding ``streams`` keyed by path tuple."""
    nodes: List[dict] = [{"name": "Root Entry", "type": 5, "children": [], "data": b""}]
    index: Dict[Tuple[str, ...], int] = {(): 0}
    for path, data in streams.items():
        for depth in range(1, len(path)):
            key = path[:depth]
            if key not in index:
                index[key] = len(nodes)
                nodes.append({"name": key[-1], "type": 1, "children": [], "data": b""})
                nodes[index[key[:-1]]]["children"].append(index[key])
        index[path] = len(nodes)
        nodes.append({"name": path[-1], "type": 2, "children": [], "data": data})
        nodes[index[path[:-1]]]["children"].append(index[path])

    size = 1 << sector_shift
    sectors: List[bytes] = []
    fat: List[int] = []

    def allocate(payload: bytes) -> int:
        if not payload:
            return ENDOFCHAIN
        start = len(sectors)
        count = -(-len(payload) // size)
        for i in range(count):
            sectors.append(payload[i * size : (i + 1) * size].ljust(size, b"\0"))
            fat.append(start + i + 1 if i < count - 1 else ENDOFCHAIN)
        return start

    ministream = bytearray()
    minifat: List[int] = []
    for node in nodes[1:]:
        node["start"], node["size"] = 0, 0
        if node["type"] != 2:
            continue
        data = node["data"]
        node["size"] = len(data)
        if not data:
            node["start"] = ENDOFCHAIN
        elif len(data) >= CUTOFF:
            node["start"] = allocate(data)
        else:
            start = len(ministream) // MINI
            count = -(-len(data) // MINI)
            for i in range(count):
                minifat.append(start + i + 1 if i < count - 1 else ENDOFCHAIN)
            ministream += data.ljust(count * MINI, b"\0")
            node["start"] = start

    nodes[0]["start"] = allocate(bytes(ministream))
    nodes[0]["size"] = len(ministream)

    minifat_start, minifat_count = ENDOFCHAIN, 0
    if minifat:
        blob = struct.pack(f"<{len(minifat)}I", *minifat)
        blob = blob.ljust(-(-len(blob) // size) * size, b"\xff")
        minifat_count = len(blob) // size
        minifat_start = allocate(blob)

    def sort_key(sid: int) -> Tuple[int, str]:
        name = nodes[sid]["name"]
        return len(name), name.upper()

    links = {sid: [NOSTREAM, NOSTREAM, NOSTREAM] for sid in range(len(nodes))}
    for sid, node in enumerate(nodes):
        children = sorted(node["children"], key=sort_key)
        if children:
            links[sid][2] = children[0]
        for current, following in zip(children, children[1:]):
            links[current][1] = following

    directory = b"".join(
        _entry(node["name"], node["type"], *links[sid], node["start"], node["size"])
        for sid, node in enumerate(nodes)
    )
    while len(directory) % size:
        directory += _entry("", 0, NOSTREAM, NOSTREAM, NOSTREAM, 0, 0)
    dir_start = allocate(directory)

    per_fat = size // 4
    per_difat = per_fat - 1
    fat_count, difat_count = 1, 0
    while True:
        difat_count = -(-max(0, fat_count - HEADER_DIFAT) // per_difat)
        if len(fat) + fat_count + difat_count <= fat_count * per_fat:
            break
        fat_count += 1
    fat_ids = list(range(len(sectors), len(sectors) + fat_count))
    difat_ids = list(range(fat_ids[-1] + 1, fat_ids[-1] + 1 + difat_count))
    fat.extend([FATSECT] * fat_count)
    fat.extend([DIFSECT] * difat_count)
    fat.extend([FREESECT] * (fat_count * per_fat - len(fat)))
    fat_blob = struct.pack(f"<{len(fat)}I", *fat)
    for i in range(fat_count):
        sectors.append(fat_blob[i * size : (i + 1) * size])

    overflow = fat_ids[HEADER_DIFAT:]
    for i in range(difat_count):
        ids = overflow[i * per_difat : (i + 1) * per_difat]
        ids += [FREESECT] * (per_difat - len(ids))
        following = difat_ids[i + 1] if i + 1 < difat_count else ENDOFCHAIN
        sectors.append(struct.pack(f"<{per_fat}I", *ids, following))

    major = 4 if sector_shift == 12 else 3
    header = bytearray(size)
    header[:8] = MAGIC
    struct.pack_into("<HHHHH", header, 24, 0x3E, major, 0xFFFE, sector_shift, 6)
    # Directory sector count is only recorded by version 4 files
    dir_sectors = len(directory) // size if major == 4 else 0
    struct.pack_into("<IIIII", header, 40, dir_sectors, fat_count, dir_start, 0, CUTOFF)
    first_difat = difat_ids[0] if difat_ids else ENDOFCHAIN
    struct.pack_into("<IIII", header, 60, minifat_start, minifat_count, first_difat, difat_count)
    difat = fat_ids[:HEADER_DIFAT] + [FREESECT] * (HEADER_DIFAT - min(fat_count, HEADER_DIFAT))
    struct.pack_into(f"<{HEADER_DIFAT}I", header, 76, *difat)
    return bytes(header) + b"".join(sectors)


# -- PROJECT stream ---------------------------------------------------------

def encrypted_hex(seed: int, data: bytes, project_key: int = 0x9F) -> str:
    return vba_unlock.encrypt_data(seed, project_key, data).hex().upper()


def project_stream(
    state: int = 7,
    password: Optional[str] = None,
    plain: Optional[str] = None,
    visible: bool = False,
    salt: bytes = SALT,
    dpb_payload: Optional[bytes] = None,
    padding: int = 0,
) -> bytes:
    """Return PROJECT stream text protected with ``password`` (hashed) or ``plain``."""
    if dpb_payload is None:
        if password is not None:
            digest = hashlib.sha1(password.encode("cp1252") + salt).digest()
            dpb_payload = vba_unlock.encode_password_hash(salt, digest)
        elif plain is not None:
            dpb_payload = plain.encode("cp1252") + b"\0"
        else:
            dpb_payload = b"\0"
    visibility = b"\xff" if visible else b"\x00"
    lines = [
        f'ID="{PROJECT_ID}"',
        "Document=ThisWorkbook/&H00000000",
        "Module=Module1",
        'Name="VBAProject"',
        'HelpContextID="0"',
        'VersionCompatible32="393222000"',
        f'CMG="{encrypted_hex(0x0C, struct.pack("<I", state))}"',
        f'DPB="{encrypted_hex(0x1A, dpb_payload)}"',
        f'GC="{encrypted_hex(0x23, visibility)}"',
        "",
        "[Host Extender Info]",
        "&H00000001={3832D640-CF90-11CF-8E43-00A0C911005A};VBE;&H00000000",
        "",
        "[Workspace]",
        "ThisWorkbook=0, 0, 0, 0, C",
        "Module1=26, 26, 1063, 537, Z",
    ]
    lines.extend(f"Sheet{i}=0, 0, 0, 0, C" for i in range(padding))
    return ("\r\n".join(lines) + "\r\n").encode("cp1252")


def uncompressed_container(payload: bytes) -> bytes:
    """MS-OVBA compressed container made only of raw chunks."""
    out = bytearray(b"\x01")
    for i in range(0, len(payload), 4096):
        chunk = payload[i : i + 4096]
        out += struct.pack("<H", (0b011 << 12) | ((len(chunk) - 1) & 0x0FFF))
        out += chunk
    return bytes(out)


def dir_stream(codepage: int = 1252) -> bytes:
    def rec(rec_id: int, payload: bytes) -> bytes:
        return struct.pack("<HL", rec_id, len(payload)) + payload

    decompressed = (
        rec(0x0001, struct.pack("<L", 1))
        + rec(0x0002, struct.pack("<L", 0x0409))
        + rec(0x0014, struct.pack("<L", 0x0409))
        + rec(0x0003, struct.pack("<H", codepage))
        + rec(0x0004, b"VBAProject")
        + struct.pack("<HLHH", 0x000F, 2, 1, 0xFFFF)
    )
    return uncompressed_container(decompressed)


def vba_streams(project: bytes, codepage: int = 1252) -> Dict[Tuple[str, ...], bytes]:
    """Streams of a vbaProject.bin: small PROJECT and dir, a large module."""
    module = b"\x01" + b"Attribute VB_Name = \"Module1\"\r\n" * 200
    return {
        ("PROJECT",): project,
        ("PROJECTwm",): b"Module1\x00M\x00o\x00d\x00u\x00l\x00e\x001\x00\x00\x00\x00\x00",
        ("VBA", "dir"): dir_stream(codepage),
        ("VBA", "_VBA_PROJECT"): b"\xcc\x61\xff\xff\x00\x00\x00",
        ("VBA", "Module1"): module,
    }


def vba_project_bin(project: bytes, codepage: int = 1252) -> bytes:
    return build_compound_file(vba_streams(project, codepage))


def xls_image(project: bytes) -> bytes:
    """A legacy workbook image: Workbook stream plus the _VBA_PROJECT_CUR storage."""
    streams = {("Workbook",): b"\x09\x08\x10\x00" + bytes(range(256)) * 20}
    for path, data in vba_streams(project).items():
        streams[("_VBA_PROJECT_CUR",) + path] = data
    return build_compound_file(streams)
