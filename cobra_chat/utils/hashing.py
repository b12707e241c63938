import struct


def stable_hash(text: str) -> int:
    """Signed 32-bit rolling hash over UTF-16 code units.

    Same result as Java's ``String.hashCode`` (``h = h * 31 + unit``), so it is
    reproducible across processes, unlike Python's salted ``hash()``.
    """
    h = 0
    for (unit,) in struct.iter_unpack("<H", text.encode("utf-16-le", "surrogatepass")):
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h
