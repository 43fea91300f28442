"""
Identity Hashing Tests
======================

Tests for canonicalization, stable id / content hash derivation,
Hamming distance and the payload normalizer feeding them.
"""

import copy
import random
import pytest
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fpcore.exceptions import InvalidArgument
from fpcore.identity_hasher import (
    canonicalize, digest, hamming_distance, hmac_ip,
    make_content_hash, make_stable_id, stable_fields
)
from fpcore.normalizer import normalize_payload, parse_when


def reverse_keys(value):
    """Same structure with every dict's insertion order reversed."""
    if isinstance(value, dict):
        return {k: reverse_keys(value[k]) for k in reversed(list(value))}
    if isinstance(value, list):
        return [reverse_keys(v) for v in value]
    return value


def flip_bits(hex_digest, count):
    data = bytearray(bytes.fromhex(hex_digest))
    for i in range(count):
        data[i // 8] ^= 1 << (i % 8)
    return data.hex()


class TestCanonicalization:
    """Test the order-independent canonical form."""

    def test_key_order_irrelevant(self):
        a = {"b": 1, "a": {"y": 2, "x": 3}}
        b = {"a": {"x": 3, "y": 2}, "b": 1}
        assert canonicalize(a) == canonicalize(b)
        assert digest(a) == digest(b)

    def test_array_order_irrelevant(self):
        assert digest({"langs": ["en", "de", "fr"]}) == digest({"langs": ["fr", "en", "de"]})
        assert digest([{"a": 1}, {"b": 2}]) == digest([{"b": 2}, {"a": 1}])

    def test_duplicates_kept(self):
        assert digest(["a", "a", "b"]) != digest(["a", "b"])

    def test_values_matter(self):
        assert digest({"a": 1}) != digest({"a": 2})
        assert len(digest({"a": 1})) == 64


class TestIdentifiers:
    """Test stable id and content hash derivation."""

    def test_reordered_snapshot_same_ids(self, sample_payload):
        normalized = normalize_payload(sample_payload, now_ms=1_700_000_000_000)
        reordered = reverse_keys(normalized)
        reordered["env"]["languages"] = list(reversed(reordered["env"]["languages"]))
        reordered["webcodecs"]["video"] = list(reversed(reordered["webcodecs"]["video"]))

        assert make_stable_id(reordered) == make_stable_id(normalized)
        assert make_content_hash(reordered) == make_content_hash(normalized)

    def test_volatile_fields_ignored(self, sample_payload):
        first = normalize_payload(sample_payload, now_ms=1_700_000_000_000)
        later = copy.deepcopy(sample_payload)
        later["meta"]["when"] = "2023-11-15T10:00:00Z"
        later["timers"]["rAF"]["p95DeltaMs"] = 33.1
        second = normalize_payload(later, now_ms=1_700_050_000_000)

        assert make_stable_id(first) == make_stable_id(second)
        assert make_content_hash(first) == make_content_hash(second)

    def test_content_hash_tracks_locale(self, sample_payload):
        first = normalize_payload(sample_payload)
        changed = copy.deepcopy(sample_payload)
        changed["intl"]["timeZone"] = "America/New_York"
        second = normalize_payload(changed)

        assert make_stable_id(first) == make_stable_id(second)
        assert make_content_hash(first) != make_content_hash(second)

    def test_stable_id_tracks_hardware(self, sample_payload):
        first = normalize_payload(sample_payload)
        changed = copy.deepcopy(sample_payload)
        changed["env"]["hardwareConcurrency"] = 16
        assert make_stable_id(first) != make_stable_id(normalize_payload(changed))

    def test_user_agent_truncated(self, sample_payload):
        long_a = copy.deepcopy(sample_payload)
        long_b = copy.deepcopy(sample_payload)
        long_a["env"]["ua"] = "x" * 256 + "tail-a"
        long_b["env"]["ua"] = "x" * 256 + "tail-b"

        assert stable_fields(normalize_payload(long_a))["ua"] == "x" * 256
        assert make_stable_id(normalize_payload(long_a)) == make_stable_id(normalize_payload(long_b))

    def test_webgl2_fallback(self, sample_payload):
        without_webgl = copy.deepcopy(sample_payload)
        without_webgl["webgl"] = {"supported": False}
        fields = stable_fields(normalize_payload(without_webgl))
        assert fields["graphics"]["renderer"].startswith("ANGLE (NVIDIA")


class TestHammingDistance:
    """Test digest bit distance."""

    def test_identity_and_symmetry(self):
        a = digest({"a": 1})
        b = digest({"a": 2})
        assert hamming_distance(a, a) == 0
        assert hamming_distance(a, b) == hamming_distance(b, a)

    def test_monotonic_in_flipped_bits(self):
        base = digest({"seed": random.Random(7).random()})
        distances = [hamming_distance(base, flip_bits(base, n)) for n in range(0, 40, 5)]
        assert distances == list(range(0, 40, 5))

    def test_length_difference_penalty(self):
        assert hamming_distance("ff", "ff00") == 8
        assert hamming_distance("", "abcd") == 16

    def test_invalid_hex(self):
        with pytest.raises(InvalidArgument):
            hamming_distance("zz", "00")


class TestNormalizer:
    """Test the payload normalizer contract used by the pipeline."""

    def test_rejects_non_object(self):
        with pytest.raises(InvalidArgument):
            normalize_payload(["not", "an", "object"])

    def test_sections_and_scores(self, sample_payload):
        normalized = normalize_payload(sample_payload, ua="ignored", now_ms=1_700_000_000_000)

        assert normalized["env"]["ua"].startswith("Mozilla/5.0")
        assert normalized["env"]["hardware_concurrency"] == 8
        assert normalized["screen"]["dpr"] == 1.25
        assert normalized["webgl"]["max_texture"] == 16384
        assert normalized["webgpu"]["limits"]["max_bind_groups"] == 4
        assert normalized["webcodecs"]["video"] == ["avc1.42E01E", "vp09.00.10.08"]
        assert normalized["rtc"]["types"] == ["host", "srflx"]
        assert normalized["fonts"]["present_count"] == 3
        assert normalized["audio"]["hash"] == "a0d10c0de"

        derived = normalized["derived"]
        assert derived["time"]["server_received"] == 1_700_000_000_000
        assert derived["consistency"]["ua_vs_webgl_renderer"] == "ok"
        assert derived["scores"]["band"] in ("low", "medium", "high")
        assert 0 <= derived["scores"]["total"] <= 100

    def test_header_ua_fallback(self):
        normalized = normalize_payload({}, ua="curl/8.0")
        assert normalized["env"]["ua"] == "curl/8.0"
        assert normalized["webgl"] == {"supported": False}

    def test_parse_when(self):
        assert parse_when(1_700_000_000_000) == 1_700_000_000_000
        assert parse_when("2023-11-14T22:13:20Z") == 1_700_000_000_000
        assert parse_when("yesterday") is None
        assert parse_when(None) is None


class TestIpDigest:
    """Test client IP anonymization."""

    def test_hmac_ip(self):
        assert hmac_ip("203.0.113.7", "salt") == hmac_ip("203.0.113.7", "salt")
        assert hmac_ip("203.0.113.7", "salt") != hmac_ip("203.0.113.7", "pepper")
        assert len(hmac_ip("203.0.113.7", "salt")) == 32
        assert "203.0.113.7" not in hmac_ip("203.0.113.7", "salt")
