from __future__ import annotations
import re
from typing import TypeAlias


_core_component_re = re.compile(r"[0-9A-Za-z]+")
_pre_component_re = re.compile(r"[0-9A-Za-z-]+")

_Component: TypeAlias = int | str


class Version:
    """
    A loosely structured version. The core is a dot separated list of
    components which may mix numeric and non-numeric segments. An optional
    pre-release follows the first '-'.
    """

    __slots__ = ("text", "core", "prerelease")
    text: str
    core: tuple[_Component, ...]
    prerelease: tuple[_Component, ...]

    def __repr__(self) -> str:
        return f"Version({self.text!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare_versions(self, other) == 0

    def __lt__(self, other: Version) -> bool:
        return compare_versions(self, other) < 0

    def __le__(self, other: Version) -> bool:
        return compare_versions(self, other) <= 0

    def __gt__(self, other: Version) -> bool:
        return compare_versions(self, other) > 0

    def __ge__(self, other: Version) -> bool:
        return compare_versions(self, other) >= 0

    def __hash__(self) -> int:
        core = list(self.core)
        while core and core[-1] == 0:
            core.pop()
        return hash((tuple(core), self.prerelease))


def _component(s: str) -> _Component:
    if s.isascii() and s.isdigit():
        return int(s)
    return s.casefold()


def try_parse_version(text: str) -> Version | None:
    """
    Parse the given text into a Version. Returns None if the text is not
    a version.
    """
    if not isinstance(text, str):
        return None
    s = text.strip()
    if s[:1] in ("v", "V"):
        s = s[1:]
    # Build metadata never takes part in ordering.
    s = s.split("+", 1)[0]
    core_str, sep, pre_str = s.partition("-")
    if not core_str or (sep and not pre_str):
        return None

    core = core_str.split(".")
    if not all(_core_component_re.fullmatch(c) for c in core):
        return None
    pre = pre_str.split(".") if sep else []
    if not all(_pre_component_re.fullmatch(c) for c in pre):
        return None

    v = Version()
    v.text = text
    v.core = tuple(_component(c) for c in core)
    v.prerelease = tuple(_component(c) for c in pre)
    return v


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _compare_component(a: _Component, b: _Component) -> int:
    if isinstance(a, int) and isinstance(b, int):
        return _cmp(a, b)
    # A numeric component against an alphanumeric one compares as text.
    return _cmp(str(a).casefold(), str(b).casefold())


def _as_version(v: Version | str) -> Version:
    if isinstance(v, Version):
        return v
    parsed = try_parse_version(v)
    if parsed is None:
        raise ValueError(f"invalid version {v!r}")
    return parsed


def compare_versions(a: Version | str, b: Version | str) -> int:
    """
    Compare two versions component-wise and return -1, 0 or 1.

    Numeric components are compared numerically so "1.2.3" < "1.2.10", any
    other pair compares as case-insensitive text so "2" > "10a". Missing
    core components count as zero so "1.2" == "1.2.0". A release ranks above
    any of its pre-releases.
    """
    va = _as_version(a)
    vb = _as_version(b)

    for i in range(max(len(va.core), len(vb.core))):
        ca = va.core[i] if i < len(va.core) else 0
        cb = vb.core[i] if i < len(vb.core) else 0
        c = _compare_component(ca, cb)
        if c:
            return c

    if not va.prerelease or not vb.prerelease:
        # Release beats pre-release, two releases are equal.
        return _cmp(not va.prerelease, not vb.prerelease)

    for ca, cb in zip(va.prerelease, vb.prerelease):
        c = _compare_component(ca, cb)
        if c:
            return c
    return _cmp(len(va.prerelease), len(vb.prerelease))
