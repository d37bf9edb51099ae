"""
Continuation payloads: how to re-enter a platform worker mid-run.

Each platform registers a builder that turns the stored continuation state
(SyncState.config) into the JSON body the worker accepts. Stored positions
are echoed as-is, never re-derived. When no position marker is stored there
is no safe resume point and the builder raises NoResumePointError; the
orchestrator resets instead of guessing.

Adding a platform means registering one builder here:

    @register("newplatform")
    class NewPlatformContinuation(ContinuationBuilder):
        def build(self, config): ...
"""
from typing import Any, Callable, Dict, Optional, Type

# ── Exceptions ────────────────────────────────────────────────────────────────


class NoResumePointError(RuntimeError):
    """Raised when a stuck sync has no stored position to resume from."""


# ── Registry ──────────────────────────────────────────────────────────────────

_REGISTRY: Dict[str, "ContinuationBuilder"] = {}


def register(platform: str) -> Callable[[Type["ContinuationBuilder"]], Type["ContinuationBuilder"]]:
    """Class decorator registering a builder instance under a platform id."""

    def decorator(cls):
        _REGISTRY[platform] = cls()
        return cls

    return decorator


def get_builder(platform: str) -> Optional["ContinuationBuilder"]:
    return _REGISTRY.get(platform)


def registered_platforms():
    return sorted(_REGISTRY)


def build_continuation(platform: str, data_source_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """Build the full worker payload for a stuck sync.

    Raises:
        NoResumePointError: unknown platform, or no stored position marker.
    """
    builder = get_builder(platform)
    if builder is None:
        raise NoResumePointError(f"No continuation builder for platform {platform!r}")
    payload = {"data_source_id": data_source_id}
    payload.update(builder.build(config))
    payload["is_continuation"] = True
    return payload


def _require(config: Dict[str, Any], key: str) -> int:
    value = config.get(key)
    if value is None or isinstance(value, bool):
        raise NoResumePointError(f"No stored {key} to resume from")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise NoResumePointError(f"Stored {key} is not a position: {value!r}")


# ── Builders ──────────────────────────────────────────────────────────────────


class ContinuationBuilder:
    """Maps stored continuation state to platform-specific payload fields."""

    def build(self, config: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


@register("smartlead")
class SmartleadContinuation(ContinuationBuilder):
    """Phased backfill: historical chunks first, then campaign pages."""

    def build(self, config):
        phase = config.get("phase")
        if phase == "historical":
            return {
                "full_backfill": True,
                "continue_from_chunk": _require(config, "historical_chunk_index"),
            }
        if phase == "campaigns":
            return {"continue_from_offset": _require(config, "campaign_offset")}
        raise NoResumePointError(f"Unknown smartlead phase {phase!r}")


@register("replyio")
class ReplyioContinuation(ContinuationBuilder):
    """Batch cursor: continue with the batch after the last one stored."""

    def build(self, config):
        return {
            "batch_number": _require(config, "batch_number") + 1,
            "auto_continue": True,
        }


@register("nocodb")
class NocodbContinuation(ContinuationBuilder):
    def build(self, config):
        return {"continue_from_offset": _require(config, "current_offset")}
