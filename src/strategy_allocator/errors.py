from __future__ import annotations


class AllocationError(RuntimeError):
    """Base class for allocation engine errors."""

    code = "ALLOCATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.user_message = user_message or message
        self.details = details


class AllocationInputError(AllocationError):
    code = "INPUT_ERROR"


class AllocationDataQualityError(AllocationError):
    code = "DATA_QUALITY_ERROR"


class AllocationComputationError(AllocationError):
    code = "COMPUTATION_ERROR"


class AllocationCancelledError(AllocationError):
    code = "CANCELLED"
