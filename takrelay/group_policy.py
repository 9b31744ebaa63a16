"""Mapping of client-certificate OUs to bus group bits.

A policy is a TOML table such as::

    [ou_to_bit]
    Cyan  = 5
    Red   = 6
    Admin = 0

Every OU of the leaf certificate that appears in the table sets its bit;
unknown OUs are ignored.  A certificate with no matching OU resolves to an
empty bitvector and therefore sees nothing, which is the secure default.
"""

from __future__ import annotations

import tomllib
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from cryptography import x509
from cryptography.x509.oid import NameOID

WIDTH = 256
"""Number of bits in a :class:`GroupBitvector`."""

_WORD_BITS = 64
_WORD_MASK = 2**64 - 1
_WORDS = WIDTH // _WORD_BITS
_U16_MAX = 2**16 - 1


@dataclass(frozen=True)
class GroupBitvector:
    """A fixed 256-bit set of group memberships, stored as four 64-bit words."""

    words: tuple[int, int, int, int] = (0, 0, 0, 0)

    EMPTY: ClassVar[GroupBitvector]
    ALL: ClassVar[GroupBitvector]

    def __post_init__(self) -> None:
        words = tuple(self.words)
        if len(words) != _WORDS or any(not 0 <= w <= _WORD_MASK for w in words):
            raise ValueError(f"a group bitvector is {_WORDS} unsigned 64-bit words")
        object.__setattr__(self, "words", words)

    def with_bit(self, bit: int) -> GroupBitvector:
        """Return a copy with ``bit`` set."""
        if not 0 <= bit < WIDTH:
            raise ValueError(f"bit {bit} outside 0..{WIDTH}")
        index, offset = divmod(bit, _WORD_BITS)
        words = list(self.words)
        words[index] |= 1 << offset
        return GroupBitvector(tuple(words))

    def intersects(self, other: GroupBitvector) -> bool:
        """True when the two sets share at least one bit."""
        return any(a & b for a, b in zip(self.words, other.words))


GroupBitvector.EMPTY = GroupBitvector()
GroupBitvector.ALL = GroupBitvector((_WORD_MASK,) * _WORDS)


class GroupPolicyError(Exception):
    """A group policy could not be loaded."""


class GroupPolicyReadError(GroupPolicyError):
    """The policy file could not be read."""

    def __init__(self, path: Path, source: BaseException) -> None:
        super().__init__(f"read {path}: {source}")
        self.path = path
        self.source = source


class GroupPolicyParseError(GroupPolicyError):
    """The policy text is not a valid policy document."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(f"parse {path}: {message}" if path is not None else f"parse: {message}")
        self.path = path
        self.message = message


class BitOutOfRangeError(GroupPolicyError):
    """An OU maps to a bit the bitvector does not have."""

    def __init__(self, ou: str, bit: int) -> None:
        super().__init__(
            f"OU={ou!r}: bit {bit} >= {WIDTH} — GroupBitvector is fixed-width, {WIDTH} bits"
        )
        self.ou = ou
        self.bit = bit


@dataclass
class GroupPolicy:
    """OU name to bit index.  The default, empty policy maps nothing."""

    ou_to_bit: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for ou, bit in self.ou_to_bit.items():
            if bit < 0:
                raise ValueError(f"OU={ou!r}: negative bit {bit}")
            if bit >= WIDTH:
                raise BitOutOfRangeError(ou, bit)


def _parse(text: str, path: Path | None) -> GroupPolicy:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise GroupPolicyParseError(str(exc), path) from exc
    table = data.get("ou_to_bit", {})
    if not isinstance(table, dict):
        raise GroupPolicyParseError("ou_to_bit must be a table", path)
    mapping: dict[str, int] = {}
    for ou, bit in table.items():
        if isinstance(bit, bool) or not isinstance(bit, int) or not 0 <= bit <= _U16_MAX:
            raise GroupPolicyParseError(
                f"ou_to_bit.{ou}: expected an integer in 0..={_U16_MAX}, got {bit!r}", path
            )
        mapping[ou] = bit
    return GroupPolicy(mapping)


def parse_group_policy(text: str) -> GroupPolicy:
    """Parse policy TOML; raises :class:`GroupPolicyParseError` or :class:`BitOutOfRangeError`."""
    return _parse(text, None)


def load_group_policy(path: Path | str) -> GroupPolicy:
    """Read and parse a policy file.

    Raises :class:`GroupPolicyReadError`, :class:`GroupPolicyParseError` or
    :class:`BitOutOfRangeError`.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise GroupPolicyReadError(path, exc) from exc
    return _parse(text, path)


def _leaf_certificate(leaf: x509.Certificate | bytes) -> x509.Certificate | None:
    if isinstance(leaf, x509.Certificate):
        return leaf
    try:
        return x509.load_der_x509_certificate(bytes(leaf))
    except ValueError:
        return None


def resolve_groups(
    certs: Sequence[x509.Certificate | bytes], policy: GroupPolicy
) -> GroupBitvector:
    """Resolve a peer's groups from the OUs of the first (leaf) certificate.

    An empty or unparseable chain, or one with no matching OU, yields
    :attr:`GroupBitvector.EMPTY`.
    """
    if not certs:
        return GroupBitvector.EMPTY
    leaf = _leaf_certificate(certs[0])
    if leaf is None:
        return GroupBitvector.EMPTY
    groups = GroupBitvector.EMPTY
    for attr in leaf.subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME):
        if not isinstance(attr.value, str):
            continue
        bit = policy.ou_to_bit.get(attr.value)
        if bit is not None:
            groups = groups.with_bit(bit)
    return groups