"""Bearer token verification for relay connections and the history endpoint."""
from .service import extract_bearer, verify_token

__all__ = ["extract_bearer", "verify_token"]
