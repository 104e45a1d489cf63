"""
Slack Web API lookups used by the chat command handler.

Only users.info is called: it resolves the requester's profile email. When
the lookup fails or the profile has no email, the configured fallback domain
is used (<user_name>@<email_domain>).
"""

from typing import Optional

import httpx
import structlog

logger = structlog.get_logger()

LOOKUP_TIMEOUT = 5.0


class SlackClient:
    def __init__(
        self,
        token: Optional[str],
        api_base_url: str = "https://slack.com/api",
        email_domain: Optional[str] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.token = token
        self.api_base_url = api_base_url.rstrip("/")
        self.email_domain = email_domain
        self.http = http or httpx.Client(timeout=LOOKUP_TIMEOUT)

    def _profile_email(self, user_id: str) -> Optional[str]:
        try:
            r = self.http.get(
                f"{self.api_base_url}/users.info",
                params={"user": user_id},
                headers={"Authorization": f"Bearer {self.token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("slack_user_lookup_failed", user_id=user_id, error=str(exc))
            return None
        if r.status_code != 200:
            logger.warning("slack_user_lookup_failed", user_id=user_id, status=r.status_code)
            return None
        body = r.json()
        if not body.get("ok"):
            logger.warning("slack_user_lookup_failed", user_id=user_id, error=body.get("error"))
            return None
        return (body.get("user") or {}).get("profile", {}).get("email") or None

    def lookup_email(self, user_id: str, user_name: Optional[str] = None) -> str:
        email = self._profile_email(user_id)
        if email:
            return email
        if self.email_domain and user_name:
            return f"{user_name}@{self.email_domain}"
        return ""

    def close(self) -> None:
        self.http.close()
