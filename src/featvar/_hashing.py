from __future__ import annotations
import math
import xxhash
from collections.abc import Callable
from enum import IntEnum
from hashlib import md5
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from . import Namespace


class HashVersion(IntEnum):
    """
    Allocation hash algorithms. An algorithm is never changed once released
    because that would move identifiers between buckets of running rollouts.
    A behavior change must ship as a new version.
    """

    # GrowthBook v1, 3 decimal places of resolution.
    V1 = 1
    # GrowthBook v2, 4 decimal places of resolution and better distribution.
    V2 = 2
    # md5 based, full double resolution.
    V3 = 3
    # xxHash32 of "salt_identifier" encoded as UTF-16LE, the allocation of
    # config based features.
    V4 = 4


def fnv1a32(s: str) -> int:
    """
    32 bit Fowler-Noll-Vo (1a) hash of the code points of the given string.
    """
    h = 0x811C9DC5
    for c in s:
        h ^= ord(c)
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def _hash_v1(salt: str, identifier: str) -> float:
    return (fnv1a32(identifier + salt) % 1000) / 1000


def _hash_v2(salt: str, identifier: str) -> float:
    return (fnv1a32(str(fnv1a32(salt + identifier))) % 10000) / 10000


def _hash_v3(salt: str, identifier: str) -> float:
    return int.from_bytes(
        md5(f"{salt}:{identifier}".encode("utf-8")).digest(),
        byteorder="big",  # Being explicit to survive default changes.
        signed=False,  # Being explicit to survive default changes.
    ) / (1 << 128)  # md5 hash is 128 bits long.


# Largest spot below 1, taken by the single digest equal to 2**32 - 1.
_max_spot = math.nextafter(1.0, 0.0)


def _hash_v4(salt: str, identifier: str) -> float:
    h = xxhash.xxh32_intdigest(f"{salt}_{identifier}".encode("utf-16-le"))
    return min(h / 0xFFFFFFFF, _max_spot)


_hashers: MappingProxyType[int, Callable[[str, str], float]] = MappingProxyType(
    {
        HashVersion.V1: _hash_v1,
        HashVersion.V2: _hash_v2,
        HashVersion.V3: _hash_v3,
        HashVersion.V4: _hash_v4,
    }
)


def get_allocation_spot(salt: str, identifier: str | None, version: int = HashVersion.V2) -> float | None:
    """
    Hashes the identifier with the salt to a spot in the range [0, 1).

    Returns None when there is no identifier or the hash version is unknown.
    Either way the caller must treat the identifier as not allocated.

    Stability of these functions is crucial. The same salt, identifier and
    version always land on the same spot, across processes, python versions
    and other implementations sharing the test vectors.
    """
    if not identifier:
        return None
    h = _hashers.get(version)
    if h is None:
        return None
    return h(salt, identifier)


def in_namespace(identifier: str | None, namespace: Namespace) -> bool:
    """
    Whether the identifier falls in the window of the namespace. Experiments
    sharing a namespace with disjoint windows never share an identifier.
    """
    spot = get_allocation_spot("__" + namespace.name, identifier, HashVersion.V1)
    if spot is None:
        return False
    return namespace.start <= spot < namespace.end
