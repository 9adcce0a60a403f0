"""Lacquer — error taxonomy shared by the capture and ingestion cores.

The HTTP layer maps these onto status codes (outputs/dashboard.py).
"""


class InputError(ValueError):
    """Malformed request input (bad UUID, blob: URL, unknown source...). → 400"""


class NotFoundError(LookupError):
    """Unknown session, job, question or image. → 404"""


class ConflictError(RuntimeError):
    """Request is well-formed but the resource state forbids it. → 409"""


class NotActionableError(RuntimeError):
    """Nothing the server can act on (e.g. no dereferenceable image). → 422"""


class PayloadIntegrityError(ValueError):
    """Queue payload violates the message contract. Never retried."""
