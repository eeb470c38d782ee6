from __future__ import annotations


class ChatServiceError(Exception):
	def __init__(self, *, status_code: int, code: str, message: str):
		super().__init__(message)
		self.status_code = status_code
		self.code = code
		self.message = message


class CollaboratorError(Exception):
	"""Best-effort data source failed; callers downgrade it to a warning."""


class DocsSourceError(CollaboratorError):
	pass


class WebSearchError(CollaboratorError):
	pass


class AccountDataError(CollaboratorError):
	pass


class SessionUnavailableError(CollaboratorError):
	pass


class RequestCanceledError(Exception):
	pass
