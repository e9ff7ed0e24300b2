from __future__ import annotations

from dataclasses import dataclass


UNAUTHORIZED = "unauthorized"
FORBIDDEN = "forbidden"
NOT_FOUND = "not_found"
VALIDATION_FAILED = "validation_failed"
INTERNAL_ERROR = "internal_error"
DATA_INTEGRITY = "data_integrity"


@dataclass
class ServiceError(Exception):
    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    @property
    def retriable(self) -> bool:
        return self.code == INTERNAL_ERROR

    def to_dict(self) -> dict:
        payload = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


def not_found(entity: str, entity_id: str | None = None) -> ServiceError:
    details = {"id": entity_id} if entity_id else None
    return ServiceError(NOT_FOUND, f"{entity} not found", details)


def validation_failed(message: str, details: dict | None = None) -> ServiceError:
    return ServiceError(VALIDATION_FAILED, message, details)


__all__ = [
    "ServiceError",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "NOT_FOUND",
    "VALIDATION_FAILED",
    "INTERNAL_ERROR",
    "DATA_INTEGRITY",
    "not_found",
    "validation_failed",
]
