from typing import Any, Optional

from bnc.fabric.exceptions import ProvisioningError


class Result:
    """Outcome of a public provisioning operation.

    Holds either a value or the error that stopped the operation. A Result is
    truthy exactly when the operation succeeded, so callers that only care
    about success can keep testing it like a boolean.
    """

    def __init__(self, value: Any = None, error: Optional[ProvisioningError] = None):
        self.value = value
        self.error = error

    @classmethod
    def success(cls, value: Any = True) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ProvisioningError) -> "Result":
        if error is None:
            raise ValueError("A failed result needs an error")
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self):
        return self.ok

    def unwrap(self):
        """Returns the value, or raises the error of a failed result"""
        if self.error is not None:
            raise self.error
        return self.value

    def __repr__(self):
        if self.ok:
            return f"Result.success({self.value!r})"
        return f"Result.failure({self.error.__class__.__name__}: {self.error})"
