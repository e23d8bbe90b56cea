"""
PKCE (Proof Key for Code Exchange) helpers - RFC 7636

Only the S256 method is accepted; OAuth 2.1 forbids "plain".
"""

import base64
import hashlib
import hmac
import math
import re
import secrets

S256 = "S256"

# RFC 7636 Section 4.1: 43-128 unreserved characters
CODE_VERIFIER_PATTERN = re.compile(r"[A-Za-z0-9\-._~]{43,128}")


def compute_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)) without padding"""
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def is_valid_verifier(code_verifier: str) -> bool:
    return bool(code_verifier) and CODE_VERIFIER_PATTERN.fullmatch(code_verifier) is not None


def verify(code_verifier: str, code_challenge: str, method: str) -> bool:
    """Check a token request's code_verifier against the stored challenge"""
    if method != S256:
        return False

    if not is_valid_verifier(code_verifier):
        return False

    if not code_challenge:
        return False

    # Constant-time comparison
    return hmac.compare_digest(compute_challenge(code_verifier).encode(), code_challenge.encode())


def generate_random_token(length: int = 64) -> str:
    """URL-safe random string of exactly `length` characters from the OS CSPRNG"""
    if length <= 0:
        raise ValueError("length must be positive")
    return secrets.token_urlsafe(math.ceil(length * 3 / 4))[:length]
