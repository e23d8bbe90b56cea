import time
import logging
from typing import Any, Dict, Optional

import httpx

from config import Config
from models import IdentityToken

logger = logging.getLogger(__name__)

class IdentityExchangeError(Exception):
    """The upstream identity exchange failed; the message is safe to surface to clients"""

def _error_message(data: Dict[str, Any], default: str) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message") or default
    return str(error) if error else default

class IdentityClient:
    """
    Turns an upstream identity assertion (from the consent surface) into a
    short-lived bearer identity token.

    Two sequential calls: the auth service trades the assertion for a custom
    credential, then the identity toolkit trades that credential for an
    identity token.
    """

    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client or httpx.AsyncClient(
            headers={
                "Content-Type": "application/json",
                "User-Agent": f"{config.service_name}/{config.service_version}"
            },
            timeout=config.identity_timeout
        )

        if not config.identity_api_key:
            logger.warning("IDENTITY_API_KEY not set - identity exchange will fail")

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def _post(self, url: str, payload: Dict[str, Any], step: str, **kwargs) -> Dict[str, Any]:
        """POST JSON and return the decoded body, mapping every failure to IdentityExchangeError"""
        try:
            response = await self.client.post(url, json=payload, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"{step}: upstream timeout")
            raise IdentityExchangeError(f"{step} failed: upstream timeout")
        except httpx.HTTPError as e:
            logger.error(f"{step}: network error: {e}")
            raise IdentityExchangeError(f"{step} failed: unable to reach upstream")

        if response.status_code >= 400:
            logger.warning(f"{step}: upstream returned {response.status_code}")
            raise IdentityExchangeError(f"{step} failed: {response.text}")

        try:
            data = response.json()
        except ValueError:
            raise IdentityExchangeError(f"{step} failed: malformed response")

        if not isinstance(data, dict):
            raise IdentityExchangeError(f"{step} failed: malformed response")
        return data

    async def get_custom_token(self, assertion: str) -> str:
        """Step 1: upstream assertion -> custom credential"""
        data = await self._post(
            f"{self.config.identity_auth_url}/authenticate/google",
            {"idToken": assertion},
            step="Assertion exchange"
        )

        payload = data.get("data")
        custom_token = payload.get("firebaseCustomToken") if isinstance(payload, dict) else None
        if data.get("status") != "success" or not custom_token:
            message = _error_message(data, "no custom token returned")
            raise IdentityExchangeError(f"Assertion exchange failed: {message}")
        return custom_token

    async def get_identity_token(self, custom_token: str) -> IdentityToken:
        """Step 2: custom credential -> identity token with a known expiry"""
        if not self.config.identity_api_key:
            raise IdentityExchangeError("Identity exchange is not configured")

        data = await self._post(
            f"{self.config.identity_toolkit_url}/v1/accounts:signInWithCustomToken",
            {"token": custom_token, "returnSecureToken": True},
            step="Custom token exchange",
            params={"key": self.config.identity_api_key}
        )

        id_token = data.get("idToken")
        if not id_token:
            message = _error_message(data, "no identity token returned")
            raise IdentityExchangeError(f"Custom token exchange failed: {message}")

        # Never trust the token past the nominal lifetime, whatever upstream claims
        lifetime = self.config.token_lifetime
        try:
            lifetime = min(lifetime, int(data["expiresIn"]))
        except (KeyError, TypeError, ValueError):
            pass

        return IdentityToken(identity_token=id_token, expires_at=time.time() + lifetime)

    async def exchange(self, assertion: str) -> IdentityToken:
        """Full assertion -> identity token exchange"""
        custom_token = await self.get_custom_token(assertion)
        identity = await self.get_identity_token(custom_token)
        logger.info("Identity token obtained from upstream")
        return identity
