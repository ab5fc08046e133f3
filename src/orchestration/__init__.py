"""Source orchestration: racing, bounded fan-out, the service facade and bulk runs."""

from .bulk import BulkResult, BulkRunner, UpdateTarget
from .executor import DotnetExecutor, ExecResult, PackageExecutor
from .racing import GenerationCounter, QuerySession, bounded_gather, race_first
from .service import (
    PackageSourceService,
    PackageUpdate,
    SourceGroup,
    TransitiveResult,
    VerifiedInfo,
)

__all__ = [
    "BulkResult",
    "BulkRunner",
    "DotnetExecutor",
    "ExecResult",
    "GenerationCounter",
    "PackageExecutor",
    "PackageSourceService",
    "PackageUpdate",
    "QuerySession",
    "SourceGroup",
    "TransitiveResult",
    "UpdateTarget",
    "VerifiedInfo",
    "bounded_gather",
    "race_first",
]
