"""
Resolver core -- domain logic and the download use case.

This package contains the domain records (no I/O), the error taxonomy and its
classifier, URL normalization, and the abstract protocols (ports) the
infrastructure layer implements, plus the DownloadOrchestrator use case.

Canonical imports:
    from app.core.resolver import DownloadOrchestrator, UrlNormalizer, classify_error
    from app.core.resolver.domain import DownloadResult, ErrorCategory
    from app.core.resolver.ports import KeyValueStore, ToolRunner
"""
from app.core.resolver.domain import (  # noqa: F401
    UrlCategory,
    ErrorCategory,
    NormalizedRequest,
    ExtractionOutcome,
    CacheRecord,
    DomainFailureState,
    DownloadResult,
)
from app.core.resolver.errors import (  # noqa: F401
    ResolverError,
    InvalidUrlError,
    ToolInvocationError,
    ToolTimeoutError,
    ToolNotFoundError,
    ToolOutputLimitError,
    classify_error,
    classify_exception,
    status_hint_for,
    user_message_for,
    truncate,
)
from app.core.resolver.ports import KeyValueStore, ToolRunner, ProcessResult  # noqa: F401
from app.core.resolver.url_normalizer import UrlNormalizer  # noqa: F401
from app.core.resolver.orchestrator import DownloadOrchestrator  # noqa: F401
