from ledgermatch.models.base import LMBaseModel
from ledgermatch.models.matching import (
    BatchMatchingRequest,
    ExtractedFields,
    MatchingRequest,
    MatchingRequestKind,
)

__all__ = [
    "BatchMatchingRequest",
    "ExtractedFields",
    "LMBaseModel",
    "MatchingRequest",
    "MatchingRequestKind",
]
