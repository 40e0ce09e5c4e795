from __future__ import annotations

import hashlib

# Owner and repository names on the hosting service never contain ":", so
# swapping the path separator for it keeps keys unique per pull request.
_KEY_SEPARATOR = ":"


def watermark_key(repo_full_name: str, number: int) -> str:
    slug = repo_full_name.strip().replace("/", _KEY_SEPARATOR)
    return f"{slug}-{int(number)}"


def normalize_login(login: str | None) -> str:
    return (login or "").strip().lower()


def is_self_authored(author: str, normalized_login: str) -> bool:
    if not normalized_login:
        return False
    return normalize_login(author) == normalized_login


def stable_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
