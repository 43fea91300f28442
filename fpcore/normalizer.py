#!/usr/bin/env python3
"""
Payload Normalizer
==================

Turns the raw browser payload posted by the collector script into the
stable section layout stored in snapshots.

Rules:
- Numbers are quantized (ints rounded, floats to fixed places)
- Lists are clamped; set-like lists are de-duplicated and sorted
- Graphics sections only carry detail when the API reported support
- Canvas/audio are reduced to their rendering digests
- Derived consistency flags and realism scores are computed last

Pure function of (raw payload, user agent, server time).
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .exceptions import InvalidArgument
from .fingerprinting.field_utils import clamp_list, norm_float, norm_int, round_half_up

SECTION_NAMES = (
    "meta", "env", "screen", "storage", "webgl", "webgl2", "webgpu",
    "media", "webcodecs", "eme", "perms", "media_devices", "timers",
    "canvas", "audio", "intl", "rtc", "behavior", "touch_evidence", "fonts",
)


def dig(obj: Any, *path: Any) -> Any:
    """Nested lookup through dicts and lists; None when any step is missing."""
    for step in path:
        if isinstance(obj, dict):
            obj = obj.get(step)
        elif isinstance(obj, list) and isinstance(step, int):
            obj = obj[step] if -len(obj) <= step < len(obj) else None
        else:
            return None
        if obj is None:
            return None
    return obj


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def _sort_uniq(values: Any) -> List[Any]:
    items = {v for v in clamp_list(values, 256) if v and isinstance(v, (str, int, float))}
    return sorted(items, key=str)


def _keys(value: Any) -> List[str]:
    return sorted(str(k) for k in value.keys()) if isinstance(value, dict) else []


def _hash_list(values: Any) -> str:
    if not isinstance(values, list):
        return ""
    return "|".join(sorted(str(v) for v in values))[:4096]


def parse_when(value: Any) -> Optional[int]:
    """Client timestamp (ISO string or epoch ms) as epoch ms."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def _normalize_gl(raw: Any, webgl2: bool = False) -> Dict[str, Any]:
    if not dig(raw, "supported"):
        return {"supported": False}
    section = {
        "supported": True,
        "vendor": raw.get("vendor") or None,
        "renderer": raw.get("renderer") or None,
        "version": raw.get("version") or None,
        "glsl": raw.get("glsl") or None,
        "max_texture": norm_int(raw.get("maxTexture")),
        "max_attribs": norm_int(raw.get("maxAttribs")),
    }
    if webgl2:
        section.update({
            "draw_buffers": norm_int(raw.get("maxDrawBuffers")),
            "color_attachments": norm_int(raw.get("maxColorAttachments")),
            "samples": norm_int(raw.get("samples")),
            "ext_count": len(clamp_list(raw.get("extensions"), 1024)),
        })
    else:
        section["ext_count"] = len(clamp_list(raw.get("extensionsFirst25"), 256))
    return section


def _normalize_webgpu(raw: Any) -> Dict[str, Any]:
    if not dig(raw, "supported"):
        return {"supported": False}
    limits = dig(raw, "adapter", "limits") or {}
    return {
        "supported": True,
        "features_hash": _hash_list(dig(raw, "adapter", "features")),
        "limits": {
            "max_texture_dimension_2d": norm_int(limits.get("maxTextureDimension2D")),
            "max_color_attachments": norm_int(limits.get("maxColorAttachments")),
            "max_bind_groups": norm_int(limits.get("maxBindGroups")),
            "max_vertex_attributes": norm_int(limits.get("maxVertexAttributes")),
            "max_buffer_size": norm_int(limits.get("maxBufferSize")),
        }
    }


def _capabilities(raw: Any) -> Dict[str, Dict[str, bool]]:
    if not isinstance(raw, dict):
        return {}
    return {
        str(name): {
            "supported": bool(dig(cap, "supported")),
            "power_efficient": bool(dig(cap, "powerEfficient")),
        }
        for name, cap in raw.items()
    }


def _ua_vs_webgl(ua: str, gl: Dict[str, Any]) -> str:
    renderer = (gl.get("renderer") or "").lower()
    if not renderer:
        return "unknown"
    ua = ua.lower()
    ok = (
        ("chrome" in ua and "angle" in renderer)
        or ("safari" in ua and "angle" not in renderer)
        or ("firefox" in ua and "angle" in renderer)
    )
    return "ok" if ok else "suspect"


def _intl_vs_tz(intl: Dict[str, Any], env: Dict[str, Any]) -> str:
    locale = intl.get("locale") or ""
    tz = env.get("timezone") or ""
    if not locale or not tz:
        return "unknown"
    return "ok" if locale[:2].lower() in tz.lower() else "mismatch"


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def compute_scores(sections: Dict[str, Any]) -> Dict[str, Any]:
    """
    Heuristic realism scores (0-100) and the overall band.

    Absent touch support is never penalised.
    """
    env = sections["env"]
    timers = sections["timers"]

    hardware_realism = (
        50
        + (20 if sections["webgl"]["supported"] or sections["webgl2"]["supported"] else 0)
        + (10 if sections["webgpu"]["supported"] else 0)
        + (10 if env.get("hardware_concurrency") is not None else 0)
        + (10 if env.get("device_memory") is not None else 0)
    )

    raf_p95 = timers.get("raf_p95_ms")
    timing_realism = (
        40
        + (20 * _clamp01(18 / raf_p95) if raf_p95 else 0)
        + (20 if timers.get("pn_p95_ns") else 0)
    )

    identity_consistency = (
        40
        + (10 if env.get("languages") else 0)
        + (10 if sections["intl"].get("time_zone") else 0)
        + (10 if env.get("cookies_enabled") else 0)
    )

    behavior = 50 + (5 if sections["touch_soft_present"] else 0)

    total = round_half_up(
        0.3 * hardware_realism + 0.25 * timing_realism
        + 0.3 * identity_consistency + 0.15 * behavior
    )
    band = "high" if total >= 80 else "medium" if total >= 60 else "low"

    return {
        "buckets": {
            "hardware_realism": round_half_up(hardware_realism),
            "timing_realism": round_half_up(timing_realism),
            "identity_consistency": round_half_up(identity_consistency),
            "behavior": round_half_up(behavior),
        },
        "total": total,
        "band": band
    }


def normalize_payload(raw: Any, ua: Optional[str] = None,
                      now_ms: Optional[int] = None) -> Dict[str, Any]:
    """
    Normalize a raw collector payload.

    Args:
        raw: Raw JSON payload from the browser
        ua: User-Agent header, used when the payload carries none
        now_ms: Server receive time (epoch ms)

    Returns:
        Dict of normalized sections plus "derived"

    Raises:
        InvalidArgument: if the payload is not a JSON object
    """
    if not isinstance(raw, dict):
        raise InvalidArgument("payload must be a JSON object")

    now_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    when = parse_when(dig(raw, "meta", "when"))

    env = {
        "ua": dig(raw, "env", "ua") or ua or None,
        "languages": clamp_list(dig(raw, "env", "languages"), 16),
        "timezone": dig(raw, "env", "timezone") or None,
        "utc_offset": dig(raw, "env", "utcOffset") or None,
        "platform": dig(raw, "env", "platform") or None,
        "hardware_concurrency": norm_int(dig(raw, "env", "hardwareConcurrency")),
        "device_memory": norm_int(dig(raw, "env", "deviceMemory")),
        "cookies_enabled": bool(dig(raw, "env", "cookiesEnabled")),
        "dnt": dig(raw, "env", "doNotTrack"),
    }

    screen = {
        "screen": dig(raw, "screen", "screen"),
        "avail": dig(raw, "screen", "avail"),
        "inner": dig(raw, "screen", "inner"),
        "color_depth": norm_int(dig(raw, "screen", "colorDepth")),
        "dpr": norm_float(dig(raw, "screen", "dpr"), 2),
        "touch_points": norm_int(dig(raw, "screen", "touchPoints")),
    }

    usage = dig(raw, "storage", "usageBytes")
    quota = dig(raw, "storage", "quotaBytes")
    storage = {
        "usage_bytes": norm_int(usage if usage is not None else dig(raw, "storage", "estimate", "usage")),
        "quota_bytes": norm_int(quota if quota is not None else dig(raw, "storage", "estimate", "quota")),
        "persisted": bool(dig(raw, "storagePlus", "persisted")),
        "buckets": bool(dig(raw, "storagePlus", "buckets", "supported")),
    }

    webcodecs_raw = raw.get("webcodecs")
    if dig(webcodecs_raw, "supported"):
        webcodecs = {
            "supported": True,
            "video": _keys(webcodecs_raw.get("video")),
            "audio": _keys(webcodecs_raw.get("audio")),
            "image": _keys(webcodecs_raw.get("image")),
        }
    else:
        webcodecs = {"supported": False}

    if dig(raw, "eme", "supported"):
        eme = {
            "supported": True,
            "widevine": bool(dig(raw, "eme", "widevine", "ok")),
            "playready": bool(dig(raw, "eme", "playready", "ok")),
        }
    else:
        eme = {"supported": False}

    media = {
        "video": _capabilities(dig(raw, "mediacap", "video")),
        "audio": _capabilities(dig(raw, "mediacap", "audio")),
        "display": dig(raw, "mediacap", "display"),
    }

    media_devices = {
        "supported": bool(dig(raw, "mediaDevices", "supported")),
        "device_count": norm_int(dig(raw, "mediaDevices", "deviceCount")),
        "kinds": dig(raw, "mediaDevices", "kinds"),
    }

    timers = {
        "pn_min_ns": norm_float(dig(raw, "timers", "performanceNow", "minDeltaNs"), 3),
        "pn_p95_ns": norm_float(dig(raw, "timers", "performanceNow", "p95DeltaNs"), 3),
        "raf_mean_ms": norm_float(dig(raw, "timers", "rAF", "meanDeltaMs"), 3),
        "raf_p95_ms": norm_float(dig(raw, "timers", "rAF", "p95DeltaMs"), 3),
    }

    canvas = {
        "hash": _first(dig(raw, "canvas", "hash"), dig(raw, "pro", "canvasGuard", "hashA")),
        "w": norm_int(dig(raw, "canvas", "w")),
        "h": norm_int(dig(raw, "canvas", "h")),
    }

    audio = {
        "hash": _first(dig(raw, "randomization", "audio", "hashes", 0),
                       dig(raw, "pro", "audioGuard", "offlineHashes", 0)),
        "sample_rate": norm_int(dig(raw, "audioDeep", "realtime", "sampleRate")) or 44100,
        "len": norm_int(dig(raw, "audioDeep", "offline", 0, "len")),
    }

    intl = {
        "locale": _first(dig(raw, "intl", "locale"), dig(raw, "intlEdge", "dtfResolved", "locale")),
        "time_zone": _first(dig(raw, "intl", "timeZone"), dig(raw, "intlEdge", "dtfResolved", "timeZone")),
        "tz_count": norm_int(dig(raw, "intlEdge", "tzCount")),
    }

    rtc = {
        "supported": bool(raw.get("rtc")),
        "types": _sort_uniq(dig(raw, "rtc", "types")),
        "v6": bool(dig(raw, "pro", "rtcDeep", "v6Present")) or bool(dig(raw, "pro4", "webrtcPlus", "cands", "v6")),
    }

    pointer_count = dig(raw, "pro2", "behavior", "pointer", "count")
    behavior = {
        "pointer_count": norm_int(pointer_count if pointer_count is not None
                                  else dig(raw, "pro", "ioRealism", "hidGranted")),
        "pointer_mean": norm_float(dig(raw, "pro2", "behavior", "pointer", "meanSpeed"), 3),
        "clicks": norm_int(dig(raw, "pro2", "behavior", "clicks")),
        "wheels": norm_int(dig(raw, "pro2", "behavior", "wheels")),
        "keys": norm_int(dig(raw, "pro2", "behavior", "keys")),
    }

    touch_evidence = {
        "max_touch_points": screen["touch_points"],
        "pointer_event": bool(dig(raw, "pro3", "pointerTouch", "pointerEvent")),
        "touch_event": bool(dig(raw, "pro3", "pointerTouch", "touchEvent")),
        "gesture_event": bool(dig(raw, "pro3", "pointerTouch", "gestureEvent")),
    }

    fonts_present = dig(raw, "pro3", "fontsDeep", "present")
    fonts = {"present_count": len(fonts_present) if isinstance(fonts_present, list) and fonts_present else None}

    sections = {
        "meta": {
            "when": dig(raw, "meta", "when"),
            "page": dig(raw, "meta", "page"),
            "app": dig(raw, "meta", "app"),
            "collected_at": datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).isoformat(),
        },
        "env": env,
        "screen": screen,
        "storage": storage,
        "webgl": _normalize_gl(raw.get("webgl")),
        "webgl2": _normalize_gl(raw.get("webgl2"), webgl2=True),
        "webgpu": _normalize_webgpu(raw.get("webgpu")),
        "media": media,
        "webcodecs": webcodecs,
        "eme": eme,
        "perms": raw.get("perms") if isinstance(raw.get("perms"), dict) else {},
        "media_devices": media_devices,
        "timers": timers,
        "canvas": canvas,
        "audio": audio,
        "intl": intl,
        "rtc": rtc,
        "behavior": behavior,
        "touch_evidence": touch_evidence,
        "fonts": fonts,
    }

    touch_present = bool(
        (touch_evidence["max_touch_points"] or 0) > 0
        or touch_evidence["touch_event"]
        or touch_evidence["pointer_event"]
    )
    preferred_gl = sections["webgl2"] if sections["webgl2"]["supported"] else sections["webgl"]

    sections["derived"] = {
        "time": {
            "client_when": when,
            "server_received": now_ms,
            "skew_ms": now_ms - when if when is not None else None,
        },
        "consistency": {
            "ua_vs_webgl_renderer": _ua_vs_webgl(env["ua"] or "", preferred_gl),
            "intl_vs_tz": _intl_vs_tz(intl, env),
            "media_devices_vs_perms": (
                "ok" if media_devices["supported"] and dig(raw, "perms", "permissions", "microphone")
                else "unknown"
            ),
        },
        "anomalies": {
            "vpn_likely": bool(
                dig(raw, "pro4", "network", "http", "effectiveType") == "4g"
                and (norm_float(dig(raw, "pro4", "network", "rttMs", "p50")) or 0) >= 100
            ),
        },
        "touch_soft": {
            "present": touch_present,
            "rule": "absence-not-negative",
        },
        "scores": compute_scores(dict(sections, touch_soft_present=touch_present)),
    }
    return sections
