from .security import AuthError, TokenClaims, TokenService, hash_password, verify_password

__all__ = ["AuthError", "TokenClaims", "TokenService", "hash_password", "verify_password"]
