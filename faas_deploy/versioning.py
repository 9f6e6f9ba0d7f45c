"""
versioning
----------

이미지 태그 버전 유틸. `v0.1.0` 과 `0.1.0` 을 모두 받아들이고,
새로 만드는 버전은 항상 `v` 접두어를 붙인다.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional, Tuple


BUMP_TYPES = ("major", "minor", "patch")

_VALID_VERSION_RE = re.compile(r"^v?\d+\.\d+\.\d+(-[\w.]+)?$")
_VERSION_PREFIX_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")
_STRICT_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")

INITIAL_VERSION = "v0.0.1"


def is_valid_version(version: str) -> bool:
    return bool(_VALID_VERSION_RE.match(version))


def _parse(version: str) -> Tuple[int, int, int]:
    m = _VERSION_PREFIX_RE.match(version)
    if not m:
        return (0, 0, 0)
    return (int(m.group(1)), int(m.group(2)), int(m.group(3)))


def increment_version(version: str, bump: str = "patch") -> str:
    m = _VERSION_PREFIX_RE.match(version)
    if not m:
        raise ValueError(f"Invalid version format: {version}")
    if bump not in BUMP_TYPES:
        raise ValueError(f"알 수 없는 bump 타입입니다: {bump!r} (major | minor | patch 중 하나)")

    major, minor, patch = (int(g) for g in m.groups())
    if bump == "major":
        major, minor, patch = major + 1, 0, 0
    elif bump == "minor":
        minor, patch = minor + 1, 0
    else:
        patch += 1
    return f"v{major}.{minor}.{patch}"


def compare_versions(a: str, b: str) -> int:
    pa, pb = _parse(a), _parse(b)
    return (pa > pb) - (pa < pb)


def find_latest_version(tags: Iterable[str]) -> Optional[str]:
    """`v?X.Y.Z` 형태의 태그만 보고 가장 높은 버전을 고른다. (pre-release 태그는 무시)"""
    candidates = [t for t in tags if _STRICT_VERSION_RE.match(t)]
    if not candidates:
        return None
    return max(candidates, key=_parse)


def next_version(current: Optional[str], bump: str = "patch") -> str:
    if not current or not is_valid_version(current):
        return INITIAL_VERSION
    return increment_version(current, bump)


def parse_version_from_image_uri(image_uri: str) -> Optional[str]:
    """
    이미지 URI 에서 버전 태그를 꺼낸다.
    예: `xxx.cr.volces.com/ns/app:v0.1.6` -> `v0.1.6`
    """
    m = re.search(r":([^:/]+)$", image_uri)
    if not m:
        return None
    tag = m.group(1)
    return tag if is_valid_version(tag) else None
