# app/core/resolver/domain.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================================
# ENUMS
# ============================================================================

class UrlCategory(str, Enum):
    POST = "post"
    REEL = "reel"
    STORY = "story"
    UNKNOWN = "unknown"


class ErrorCategory(str, Enum):
    """
    Stable failure categories.
    Used both for control flow (backoff feeding) and for user-facing mapping.
    """
    INVALID_URL = "invalid_url"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# ============================================================================
# REQUEST
# ============================================================================

@dataclass(frozen=True)
class NormalizedRequest:
    """
    Validated and canonicalized input.
    Built only by UrlNormalizer.build(); never mutated afterwards.
    """
    original_id: str
    normalized_id: str
    cache_key: str
    category: UrlCategory
    domain: str = ""


# ============================================================================
# EXTRACTION OUTCOME
# ============================================================================

@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of one tool's strategy set (or one strategy attempt)."""
    success: bool
    tool_name: str
    strategy_name: str
    duration_ms: int = 0
    download_url: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    raw_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def succeeded(
        cls,
        tool_name: str,
        strategy_name: str,
        download_url: str,
        duration_ms: int,
        metadata: Dict[str, Any] | None = None,
    ) -> "ExtractionOutcome":
        return cls(
            success=True,
            tool_name=tool_name,
            strategy_name=strategy_name,
            duration_ms=duration_ms,
            download_url=download_url,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def failed(
        cls,
        tool_name: str,
        error_category: ErrorCategory,
        raw_error: str,
        strategy_name: str = "all_failed",
        duration_ms: int = 0,
        metadata: Dict[str, Any] | None = None,
    ) -> "ExtractionOutcome":
        return cls(
            success=False,
            tool_name=tool_name,
            strategy_name=strategy_name,
            duration_ms=duration_ms,
            error_category=error_category,
            raw_error=raw_error,
            metadata=dict(metadata or {}),
        )


# ============================================================================
# CACHE RECORD
# ============================================================================

@dataclass
class CacheRecord:
    """
    Cached extraction result.

    Serialized as JSON with the keys downloadUrl/tool/strategy/originalUrl/
    cachedAt/ttl/metadata. Older deployments stored the bare download URL
    as a plain string; see CacheRecord.legacy().
    """
    download_url: str
    tool_name: str
    strategy_name: str
    original_id: str = ""
    cached_at: str = ""
    ttl_seconds: int = 0
    extra_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_legacy(self) -> bool:
        return self.extra_metadata.get("format") == "legacy_cache"

    def to_json(self) -> str:
        return json.dumps({
            "downloadUrl": self.download_url,
            "tool": self.tool_name,
            "strategy": self.strategy_name,
            "originalUrl": self.original_id,
            "cachedAt": self.cached_at,
            "ttl": self.ttl_seconds,
            "metadata": self.extra_metadata,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheRecord":
        return cls(
            download_url=data.get("downloadUrl") or "",
            tool_name=data.get("tool") or "unknown",
            strategy_name=data.get("strategy") or "unknown",
            original_id=data.get("originalUrl") or "",
            cached_at=data.get("cachedAt") or "",
            ttl_seconds=int(data.get("ttl") or 0),
            extra_metadata=dict(data.get("metadata") or {}),
        )

    @classmethod
    def legacy(cls, raw_value: str) -> "CacheRecord":
        """Minimal record for a plain-string (pre-JSON) cache value."""
        return cls(
            download_url=raw_value,
            tool_name="unknown",
            strategy_name="legacy",
            extra_metadata={"format": "legacy_cache"},
        )


# ============================================================================
# BACKOFF STATE
# ============================================================================

@dataclass
class DomainFailureState:
    domain: str
    consecutive_failures: int = 0
    last_failure_ts: float = 0.0  # seconds since epoch
    last_error_category: str = ErrorCategory.UNKNOWN.value


# ============================================================================
# DOWNLOAD RESULT
# ============================================================================

@dataclass
class DownloadResult:
    """
    Public outcome of DownloadOrchestrator.download().
    Either a success (download_url set) or a categorized failure.
    """
    success: bool
    original_url: str = ""
    download_url: Optional[str] = None
    cached: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_category: Optional[ErrorCategory] = None
    user_message: Optional[str] = None
    status_hint: int = 200
    details: Optional[str] = None

    @classmethod
    def ok(
        cls,
        download_url: str,
        original_url: str,
        cached: bool,
        metadata: Dict[str, Any],
    ) -> "DownloadResult":
        return cls(
            success=True,
            original_url=original_url,
            download_url=download_url,
            cached=cached,
            metadata=metadata,
        )

    @classmethod
    def error(
        cls,
        category: ErrorCategory,
        user_message: str,
        status_hint: int,
        details: str,
        original_url: str,
        metadata: Dict[str, Any] | None = None,
    ) -> "DownloadResult":
        return cls(
            success=False,
            original_url=original_url,
            metadata=dict(metadata or {}),
            error_category=category,
            user_message=user_message,
            status_hint=status_hint,
            details=details,
        )

    def to_payload(self) -> Dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "downloadUrl": self.download_url,
                "cached": self.cached,
                "originalUrl": self.original_url,
                "metadata": self.metadata,
            }
        return {
            "success": False,
            "error": self.user_message,
            "category": self.error_category.value if self.error_category else ErrorCategory.UNKNOWN.value,
            "details": self.details,
            "metadata": self.metadata,
        }
