from __future__ import annotations

import hashlib
import re

_WS = re.compile(r"\s+")


def normalize_path(path_str: str) -> str:
    value = path_str.replace("\\", "/")
    if value.startswith("./"):
        value = value[2:]
    return value


def normalize_condition(text: str) -> str:
    return _WS.sub(" ", (text or "").strip().lower())


def hash_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def file_hash(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def stable_finding_id(path_str: str, condition: str) -> str:
    """Identity of a finding across runs: same file, same underlying condition."""
    parts = [normalize_path(path_str or ""), normalize_condition(condition)]
    digest = hashlib.sha1("::".join(parts).encode("utf-8")).hexdigest()
    return f"F-{digest[:12]}"


def hypothesis_signature(path_str: str, condition: str) -> str:
    parts = [normalize_path(path_str or ""), normalize_condition(condition)]
    digest = hashlib.sha1("||".join(parts).encode("utf-8")).hexdigest()
    return f"sig:{digest[:16]}"


def short_ref(ref: str, length: int = 7) -> str:
    """Short, filesystem-safe token for a codebase reference."""
    ref = (ref or "").strip()
    if ref and re.fullmatch(r"[0-9a-fA-F]{7,64}", ref):
        return ref[:length].lower()
    return hash_text(ref or "unknown")[:length]
