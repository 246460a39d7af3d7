import hashlib
import time
from uuid import uuid4


def truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[: max_len - 3] + "..."


def ms_now() -> int:
    return time.monotonic_ns() // 1_000_000


def short_id() -> str:
    return str(uuid4())[:8]


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
