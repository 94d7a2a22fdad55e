"""Custom exceptions for relay services."""

from __future__ import annotations

from fastapi import status


class RelayError(Exception):
	"""Base class for relay errors surfaced to clients."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "relay_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class MessageValidationError(RelayError):
	"""Raised when a send request is malformed; nothing is persisted."""

	detail = "invalid_message"


class PersistenceFailure(RelayError):
	"""Raised when the message store rejects a write; the send is aborted."""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	detail = "persistence_failed"


class ImageRejected(RelayError):
	"""Raised when an uploaded image fails type or size checks."""

	detail = "invalid_image"


class JoinRejected(RelayError):
	"""Raised when a connection cannot be bound to the announced identity."""

	status_code = status.HTTP_409_CONFLICT
	detail = "join_rejected"
