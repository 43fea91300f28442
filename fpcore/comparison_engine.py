"""
Comparison Engine

Scores how likely two stored snapshots come from the same device and
browser install, and explains the score.

Score (0-100):
    50
    +30  same stable id
    -min(30, round(hamming(content_a, content_b) / 4))   halves round up
    +10  user agent product tokens (text before the first "/") match
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .exceptions import NotFound
from .fingerprinting.field_utils import round_half_up
from .identity_hasher import hamming_distance
from .snapshot import Snapshot
from .snapshot_repository import SnapshotRepository

MAX_FACTORS = 6

DIFF_GROUPS: Dict[str, List[Tuple[str, str]]] = {
    "environment": [
        ("env", "ua"), ("env", "languages"), ("env", "platform"),
        ("env", "hardware_concurrency"), ("env", "device_memory"),
    ],
    "screen": [
        ("screen", "dpr"), ("screen", "color_depth"), ("screen", "touch_points"),
    ],
    "graphics": [
        ("webgl", "vendor"), ("webgl", "renderer"), ("webgl", "max_texture"),
        ("webgl2", "vendor"), ("webgl2", "renderer"), ("webgl2", "max_texture"),
        ("webgpu", "supported"),
    ],
    "locale": [
        ("intl", "locale"), ("intl", "time_zone"),
    ],
    "canvas": [
        ("canvas", "hash"),
    ],
    "audio": [
        ("audio", "hash"),
    ],
}


@dataclass
class ComparisonResult:
    """Outcome of comparing two snapshots"""
    a: Dict[str, Any]
    b: Dict[str, Any]
    same_stable_id: bool
    hash_distance: int
    score: int
    factors: List[Dict[str, str]] = field(default_factory=list)
    diff: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'a': self.a,
            'b': self.b,
            'same_stable_id': self.same_stable_id,
            'hash_distance': self.hash_distance,
            'score': self.score,
            'factors': self.factors,
            'diff': self.diff
        }


def _product_token(ua: Optional[str]) -> Optional[str]:
    if not ua:
        return None
    return ua.split("/", 1)[0]


def compatibility_score(a: Snapshot, b: Snapshot, distance: int) -> int:
    score = 50
    if a.stable_id == b.stable_id:
        score += 30
    score -= min(30, round_half_up(distance / 4))
    token_a = _product_token(a.section("env").get("ua"))
    if token_a and token_a == _product_token(b.section("env").get("ua")):
        score += 10
    return max(0, min(100, score))


def _same_present(x: Any, y: Any) -> bool:
    return x is not None and x == y


def explain(a: Snapshot, b: Snapshot) -> List[Dict[str, str]]:
    """Ordered pro/con factors, capped at MAX_FACTORS."""
    factors = []

    def pro(message):
        factors.append({"kind": "pro", "message": message})

    def con(message):
        factors.append({"kind": "con", "message": message})

    if a.stable_id == b.stable_id:
        pro("stable id matches")
    if _same_present(a.section("env").get("ua"), b.section("env").get("ua")):
        pro("user agent matches")
    if (_same_present(a.section("webgl").get("renderer"), b.section("webgl").get("renderer"))
            or _same_present(a.section("webgl2").get("renderer"), b.section("webgl2").get("renderer"))):
        pro("graphics renderer matches")
    if _same_present(a.section("canvas").get("hash"), b.section("canvas").get("hash")):
        pro("canvas hash matches")
    if _same_present(a.section("audio").get("hash"), b.section("audio").get("hash")):
        pro("audio hash matches")

    if a.section("screen").get("dpr") != b.section("screen").get("dpr"):
        con("different device pixel ratio")
    if a.section("intl").get("time_zone") != b.section("intl").get("time_zone"):
        con("different time zone")

    return factors[:MAX_FACTORS]


def diff_snapshots(a: Snapshot, b: Snapshot) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """Per-field {a, b, same} grouped by section."""
    result = {}
    for group, fields in DIFF_GROUPS.items():
        entries = {}
        for section, name in fields:
            va = a.section(section).get(name)
            vb = b.section(section).get(name)
            # graphics spans several sections with the same field names
            key = f"{section}.{name}" if group == "graphics" else name
            entries[key] = {"a": va, "b": vb, "same": va == vb}
        result[group] = entries
    return result


class ComparisonEngine:
    """
    Compares snapshots held by a SnapshotRepository.
    """

    def __init__(self, repository: SnapshotRepository):
        self.repository = repository

    def compare(self, id_a: str, id_b: str) -> ComparisonResult:
        """
        Compare two stored snapshots.

        Raises:
            NotFound: if either snapshot is missing
        """
        a = self.repository.get_by_id(id_a)
        b = self.repository.get_by_id(id_b)
        missing = [i for i, snap in ((id_a, a), (id_b, b)) if snap is None]
        if missing:
            raise NotFound(f"snapshot not found: {', '.join(str(i) for i in missing)}",
                           context={"missing": missing})

        distance = hamming_distance(a.content_hash, b.content_hash)
        score = compatibility_score(a, b, distance)

        logger.debug(f"Compared {a.id} vs {b.id}: score={score}, distance={distance}")

        return ComparisonResult(
            a={"id": a.id, "created_at": a.created_at},
            b={"id": b.id, "created_at": b.created_at},
            same_stable_id=a.stable_id == b.stable_id,
            hash_distance=distance,
            score=score,
            factors=explain(a, b),
            diff=diff_snapshots(a, b)
        )
