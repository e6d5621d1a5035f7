"""Exit codes for the relctl CLI.

These values are process exit codes consumed by the CI job that invokes
relctl and should remain stable:
- 0: Success (including a run with no changes to release)
- 1: User error (bad flags, invalid config)
- 2: Setup error (prepare failed, required cache missing)
- 3: Test failure (a non-tolerated matrix cell failed)
- 4: Finalize failure (a push/publish/release step failed)
- 5: Cancelled (forced or superseded)
"""

from enum import IntEnum

__all__ = ["ErrorCode"]


class ErrorCode(IntEnum):
    OK = 0
    USER_ERROR = 1
    SETUP_ERROR = 2
    TEST_FAILURE = 3
    FINALIZE_FAILURE = 4
    CANCELLED = 5

    def __str__(self) -> str:
        return self.name.lower().replace("_", " ")

    @property
    def is_success(self) -> bool:
        return self == ErrorCode.OK
