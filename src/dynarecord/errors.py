from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class DynarecordError(Exception):
    pass


class ConditionFailedError(DynarecordError):
    pass


class ItemAlreadyExistsError(ConditionFailedError):
    pass


class NotFoundError(DynarecordError):
    pass


class TableDoesNotExistError(NotFoundError):
    pass


class ValidationError(DynarecordError):
    pass


class KeyMissingError(ValidationError):
    pass


class TransactionalSaveConditionCollisionError(ValidationError):
    pass


class MissingRequiredConfigurationError(ValidationError):
    pass


class BatchRetryExceededError(DynarecordError):
    def __init__(self, *, operation: str, unprocessed: Sequence[Any] = ()) -> None:
        super().__init__(f"{operation}: retry limit exceeded (unprocessed={len(unprocessed)})")
        self.operation = operation
        self.unprocessed = list(unprocessed)
        self.unprocessed_count = len(self.unprocessed)


class TransactionCanceledError(DynarecordError):
    def __init__(self, *, message: str, reason_codes: tuple[str, ...]) -> None:
        super().__init__(message)
        self.reason_codes = reason_codes


class AwsError(DynarecordError):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class ModelDefinitionError(ValueError):
    pass


class NameCollisionError(ModelDefinitionError):
    pass


class ReservedNameError(ModelDefinitionError):
    pass
