"""Threshold secret sharing over secp256k1.

Implements the cryptographic layer of master-key custody:

- key pairs (scalar, point) on secp256k1,
- Shamir sharing of a scalar with a degree t-1 polynomial,
- Feldman commitments: the public polynomial A_k = a_k * G lets anyone check
  that a share commitment y_i * G lies on the polynomial without the share,
- Lagrange reconstruction with consistency checks,
- DKG helpers used during master-key negotiation: every node deals its own
  polynomial and the master public polynomial is the coefficient-wise sum,
- deterministic pseudonym derivation from a subject key.

Points travel as 33-byte compressed SEC1 encodings. The point at infinity
is encoded as a single zero byte.

Example:
    >>> shares, public = deal(secret, t=3, n=5)
    >>> commitments = [commit(s) for s in shares]
    >>> all(verify_commitment(c, c.index, public) for c in commitments)
    True
    >>> reconstruct(shares[1:4], t=3, master_public=public) == secret
    True
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, NewType

from ecdsa import SECP256k1
from ecdsa.ellipticcurve import INFINITY, AbstractPoint, PointJacobi
from ecdsa.errors import MalformedPointError

from ..core.exceptions import (
    DuplicateIndex,
    InconsistentShares,
    InsufficientShares,
    InvalidThreshold,
    ValidationException,
)

logger = logging.getLogger(__name__)

CURVE = SECP256k1.curve
ORDER: int = SECP256k1.order
G: PointJacobi = SECP256k1.generator

INFINITY_ENCODING = b"\x00"

# Domain separators
DOMAIN_PSEUDONYM = b"ssid-pseudonym-v1"
DOMAIN_PSEUDONYM_TAG = b"ssid-pseudonym-tag-v1"

PseudonymTag = NewType("PseudonymTag", str)


# =============================================================================
# GROUP HELPERS
# =============================================================================


def random_scalar() -> int:
    """Uniform non-zero scalar from the OS CSPRNG."""
    return secrets.randbelow(ORDER - 1) + 1


def hash_to_scalar(*parts: bytes) -> int:
    """Hash length-prefixed byte strings to a scalar mod the group order."""
    hasher = hashlib.sha512()
    for part in parts:
        hasher.update(len(part).to_bytes(4, "big"))
        hasher.update(part)
    return int.from_bytes(hasher.digest(), "big") % ORDER


def is_infinity(point: AbstractPoint) -> bool:
    return point is INFINITY or point == INFINITY


def point_add(a: AbstractPoint, b: AbstractPoint) -> AbstractPoint:
    if is_infinity(a):
        return b
    if is_infinity(b):
        return a
    return a + b


def point_mul(k: int, point: AbstractPoint) -> AbstractPoint:
    k %= ORDER
    if k == 0 or is_infinity(point):
        return INFINITY
    return k * point


def encode_point(point: AbstractPoint) -> bytes:
    """Compressed SEC1 encoding."""
    if is_infinity(point):
        return INFINITY_ENCODING
    return point.to_bytes("compressed")


def decode_point(data: bytes) -> AbstractPoint:
    """Decode a compressed point, validating that it lies on the curve.

    Raises:
        ValueError: if the bytes are not a valid encoding.
    """
    if data == INFINITY_ENCODING:
        return INFINITY
    try:
        return PointJacobi.from_bytes(CURVE, data, valid_encodings=("compressed",), order=ORDER)
    except MalformedPointError as e:
        raise ValueError(f"Invalid point encoding: {e}") from e


def public_point(secret: int) -> AbstractPoint:
    return point_mul(secret, G)


# =============================================================================
# DATA TYPES
# =============================================================================


@dataclass
class KeyPair:
    """A private scalar and its public point.

    The scalar is excluded from repr so it can not leak into a log line.
    Unpacks as ``secret, public = generate_keypair()``.
    """

    secret: int = field(repr=False)
    public: AbstractPoint

    def __iter__(self) -> Iterator[Any]:
        yield self.secret
        yield self.public

    @property
    def public_bytes(self) -> bytes:
        return encode_point(self.public)


@dataclass(frozen=True)
class Share:
    """One evaluation y_i = f(i) of a sharing polynomial."""

    index: int
    value: int = field(repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "value": format(self.value, "064x")}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Share:
        return cls(index=int(data["index"]), value=int(data["value"], 16))


@dataclass(frozen=True)
class Commitment:
    """Public commitment y_i * G to a share. Reveals nothing about y_i."""

    index: int
    encoded: bytes

    @property
    def point(self) -> AbstractPoint:
        return decode_point(self.encoded)

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "point": self.encoded.hex()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Commitment:
        return cls(index=int(data["index"]), encoded=bytes.fromhex(data["point"]))


@dataclass(frozen=True)
class PublicPolynomial:
    """Feldman coefficient commitments (A_0, ..., A_{t-1}).

    A_0 is the master public key. The polynomial a share commitment must lie
    on is F(x) = sum A_k * x^k.
    """

    coefficients: tuple[bytes, ...]

    def __post_init__(self) -> None:
        if not self.coefficients:
            raise ValueError("Public polynomial needs at least one coefficient")

    @property
    def threshold(self) -> int:
        return len(self.coefficients)

    @property
    def key(self) -> AbstractPoint:
        return decode_point(self.coefficients[0])

    @property
    def key_hex(self) -> str:
        return self.coefficients[0].hex()

    def points(self) -> list[AbstractPoint]:
        return [decode_point(c) for c in self.coefficients]

    def evaluate(self, x: int) -> AbstractPoint:
        # Horner's rule over the group
        acc: AbstractPoint = INFINITY
        for coefficient in reversed(self.points()):
            acc = point_add(point_mul(x, acc), coefficient)
        return acc

    def to_dict(self) -> dict[str, Any]:
        return {"coefficients": [c.hex() for c in self.coefficients]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PublicPolynomial:
        poly = cls(coefficients=tuple(bytes.fromhex(c) for c in data["coefficients"]))
        poly.points()  # ValueError on an off-curve or malformed encoding
        return poly

    @classmethod
    def from_points(cls, points: Iterable[AbstractPoint]) -> PublicPolynomial:
        return cls(coefficients=tuple(encode_point(p) for p in points))


class Polynomial:
    """Secret polynomial f(x) = a_0 + a_1 x + ... over Z_q."""

    def __init__(self, coefficients: Sequence[int]):
        if not coefficients:
            raise ValueError("Polynomial needs at least one coefficient")
        self._coefficients = [c % ORDER for c in coefficients]

    def __repr__(self) -> str:
        return f"Polynomial(degree={self.degree})"

    @classmethod
    def random(cls, secret: int, degree: int) -> Polynomial:
        return cls([secret] + [random_scalar() for _ in range(degree)])

    @property
    def degree(self) -> int:
        return len(self._coefficients) - 1

    def evaluate(self, x: int) -> int:
        acc = 0
        for coefficient in reversed(self._coefficients):
            acc = (acc * x + coefficient) % ORDER
        return acc

    def shares(self, n: int) -> list[Share]:
        return [Share(index=i, value=self.evaluate(i)) for i in range(1, n + 1)]

    def public(self) -> PublicPolynomial:
        return PublicPolynomial.from_points(public_point(a) for a in self._coefficients)


# =============================================================================
# SHARING
# =============================================================================


def check_threshold(t: int, n: int) -> None:
    """Raise InvalidThreshold unless 1 <= t <= n < q."""
    if t < 1 or t > n or n >= ORDER:
        raise InvalidThreshold(t, n)


def generate_keypair() -> KeyPair:
    """Draw a private scalar uniformly from the scalar field."""
    secret = random_scalar()
    return KeyPair(secret=secret, public=public_point(secret))


def split_secret(secret: int, t: int, n: int) -> list[Share]:
    """Split a scalar into n shares, any t of which reconstruct it.

    Raises:
        InvalidThreshold: if t > n or t < 1.
    """
    shares, _ = deal(secret, t, n)
    return shares


def deal(secret: int, t: int, n: int) -> tuple[list[Share], PublicPolynomial]:
    """Split a scalar and return the shares plus the Feldman public polynomial."""
    check_threshold(t, n)
    poly = Polynomial.random(secret, t - 1)
    return poly.shares(n), poly.public()


def commit(share: Share) -> Commitment:
    return Commitment(index=share.index, encoded=encode_point(public_point(share.value)))


def verify_commitment(commitment: Commitment, index: int, master_public: PublicPolynomial) -> bool:
    """Check a commitment lies on the polynomial implied by the master key.

    Never needs the share itself. Malformed points verify as False.
    """
    if commitment.index != index or not 1 <= index < ORDER:
        return False
    try:
        return encode_point(commitment.point) == encode_point(master_public.evaluate(index))
    except ValueError:
        return False


def verify_share(share: Share, public: PublicPolynomial) -> bool:
    """Feldman check of a privately received share."""
    return verify_commitment(commit(share), share.index, public)


def verify_commitments(
    items: Iterable[tuple[str, Commitment]],
    master_public: PublicPolynomial,
    workers: int = 1,
) -> list[tuple[str, bool]]:
    """Verify many (node_id, commitment) pairs, optionally in parallel.

    Results are merged sorted by node id so every replica sees the same order
    regardless of thread scheduling.
    """
    pairs = list(items)
    if workers <= 1 or len(pairs) <= 1:
        results = [(node_id, verify_commitment(c, c.index, master_public)) for node_id, c in pairs]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            verdicts = pool.map(lambda pair: verify_commitment(pair[1], pair[1].index, master_public), pairs)
            results = [(node_id, ok) for (node_id, _), ok in zip(pairs, verdicts, strict=True)]
    return sorted(results, key=lambda item: item[0])


# =============================================================================
# RECONSTRUCTION
# =============================================================================


def lagrange_coefficient(i: int, indices: Sequence[int], x: int = 0) -> int:
    """Lagrange basis polynomial l_i evaluated at x."""
    num = 1
    den = 1
    for j in indices:
        if j != i:
            num = num * (x - j) % ORDER
            den = den * (i - j) % ORDER
    return num * pow(den, -1, ORDER) % ORDER


def interpolate(shares: Sequence[Share], x: int = 0) -> int:
    indices = [s.index for s in shares]
    acc = 0
    for share in shares:
        acc = (acc + lagrange_coefficient(share.index, indices, x) * share.value) % ORDER
    return acc


def reconstruct(
    shares: Sequence[Share],
    t: int,
    master_public: PublicPolynomial | None = None,
) -> int:
    """Interpolate the secret at x=0 from at least t distinct shares.

    Shares beyond the first t must lie on the same polynomial, and when the
    master public polynomial is given the result must match its key.

    Raises:
        InsufficientShares: fewer than t shares. Checked before any arithmetic.
        DuplicateIndex: an index repeats.
        InconsistentShares: the shares disagree with each other or the key.
    """
    if t < 1:
        raise InvalidThreshold(t, len(shares))

    seen: set[int] = set()
    for share in shares:
        if not 1 <= share.index < ORDER:
            raise ValidationException("Share index out of range", field="index", value=share.index)
        if share.index in seen:
            raise DuplicateIndex(share.index)
        seen.add(share.index)

    if len(shares) < t:
        raise InsufficientShares(len(shares), t)

    base = list(shares[:t])
    secret = interpolate(base)

    for extra in shares[t:]:
        if interpolate(base, extra.index) != extra.value % ORDER:
            raise InconsistentShares()

    if master_public is not None and encode_point(public_point(secret)) != master_public.coefficients[0]:
        raise InconsistentShares()

    return secret


# =============================================================================
# DISTRIBUTED KEY GENERATION
# =============================================================================


@dataclass
class KeyDealing:
    """One node's contribution to a master-key negotiation.

    The dealer keeps ``shares`` private and sends share i to the holder with
    index i over a secure channel. ``public`` is published so recipients can
    check what they received.
    """

    shares: list[Share] = field(repr=False)
    public: PublicPolynomial

    @classmethod
    def deal(cls, t: int, n: int) -> KeyDealing:
        shares, public = deal(random_scalar(), t, n)
        return cls(shares=shares, public=public)

    def share_for(self, index: int) -> Share:
        return self.shares[index - 1]


def combine_public(polys: Sequence[PublicPolynomial]) -> PublicPolynomial:
    """Coefficient-wise sum of the dealers' public polynomials."""
    if not polys:
        raise ValueError("At least one public polynomial is required")
    degree = {p.threshold for p in polys}
    if len(degree) != 1:
        raise ValueError("Public polynomials have different thresholds")

    acc = polys[0].points()
    for poly in polys[1:]:
        acc = [point_add(a, b) for a, b in zip(acc, poly.points(), strict=True)]
    return PublicPolynomial.from_points(acc)


def aggregate_shares(index: int, shares: Iterable[Share]) -> Share:
    """Sum the shares a holder received from every dealer."""
    total = 0
    for share in shares:
        if share.index != index:
            raise ValueError(f"Share for index {share.index} does not belong to holder {index}")
        total = (total + share.value) % ORDER
    return Share(index=index, value=total)


# =============================================================================
# PSEUDONYMS
# =============================================================================


def derive_pseudonym(public_info: bytes, subject_key: AbstractPoint) -> PseudonymTag:
    """Derive a stable pseudonym from public information and a subject key.

    tag = SHA-256(domain || enc(H(public_info) * subject_key)). The same
    inputs always give the same tag, so any authorized party can recompute
    it without shared state.
    """
    h = hash_to_scalar(DOMAIN_PSEUDONYM, public_info)
    blinded = point_mul(h, subject_key)
    return PseudonymTag(hashlib.sha256(DOMAIN_PSEUDONYM_TAG + encode_point(blinded)).hexdigest())
