import base64
import json
import logging
from typing import Any
from urllib import error, parse, request

from crmgate.core.config import settings
from crmgate.tenants.models import Tenant

logger = logging.getLogger(__name__)

MAX_LOGGED_BODY = 500


class CrmError(Exception):
    """The CRM could not be reached or answered with a non-2xx status.

    ``body`` is kept for logging only and must not be echoed to API clients.
    """

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


def basic_auth_header(username: str, password: str) -> str:
    raw = f"{username}:{password}".encode("utf-8")
    return f"Basic {base64.b64encode(raw).decode('ascii')}"


def crm_auth_key(user_id: str) -> str:
    return f"crm:auth:{user_id}"


class CrmClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        auth_header: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.auth_header = auth_header
        self.timeout = timeout if timeout is not None else settings.CRM_HTTP_TIMEOUT_SECONDS

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_header:
            headers["Authorization"] = self.auth_header
        elif self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    def request(self, method: str, action: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}/api/v1/{action}"
        if params:
            encoded = {
                k: json.dumps(v) if isinstance(v, (dict, list)) else v
                for k, v in params.items()
                if v is not None
            }
            url = f"{url}?{parse.urlencode(encoded)}"

        req = request.Request(url, headers=self._headers(), method=method)
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            logger.warning(
                "CRM %s %s -> %s: %s", method, action, e.code, body[:MAX_LOGGED_BODY]
            )
            raise CrmError(f"CRM request failed with status {e.code}", status=e.code, body=body) from e
        except (error.URLError, TimeoutError, OSError) as e:
            logger.warning("CRM %s %s unreachable: %s", method, action, e)
            raise CrmError("CRM unreachable") from e

        try:
            return json.loads(raw or b"null")
        except ValueError as e:
            raise CrmError("CRM returned a non-JSON body") from e

    def list_users(self, user_name: str | None = None, max_size: int = 200) -> list[dict]:
        params: dict[str, Any] = {"maxSize": max_size}
        if user_name:
            params["where"] = [{"type": "equals", "attribute": "userName", "value": user_name}]
        data = self.request("GET", "User", params)
        return list((data or {}).get("list") or [])

    def get_user(self, user_id: str) -> dict:
        return self.request("GET", f"User/{user_id}") or {}

    def list_roles(self) -> list[dict]:
        data = self.request("GET", "Role", {"maxSize": 200})
        roles = (data or {}).get("list")
        if not isinstance(roles, list):
            raise CrmError("Invalid roles response from CRM")
        return roles

    def get_role(self, role_id: str) -> dict:
        return self.request("GET", f"Role/{role_id}") or {}


def crm_client_for_tenant(tenant: Tenant, *, auth_header: str | None = None) -> CrmClient:
    return CrmClient(tenant.crm_url, api_key=tenant.crm_api_key, auth_header=auth_header)


def user_crm_client(cache, tenant: Tenant, user_id: str) -> CrmClient:
    """Client acting as ``user_id`` via the Basic credential cached at login.

    Falls back to the tenant service credential once the cached one has expired.
    """
    auth_header = cache.get(crm_auth_key(user_id))
    if not auth_header:
        logger.warning("No cached CRM credential for user %s, using tenant API key", user_id)
    return crm_client_for_tenant(tenant, auth_header=auth_header)
