"""Shared Google OAuth app settings (Analytics and Ads use the same consent screen)."""

from insighthub.platforms.base import PlatformAdapter


class GoogleOAuthAdapter(PlatformAdapter):
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    revoke_url = "https://oauth2.googleapis.com/revoke"
    # offline + consent: Google only returns a refresh token on forced consent
    extra_auth_params = {"access_type": "offline", "prompt": "consent", "include_granted_scopes": "true"}

    @classmethod
    def from_settings(cls, settings, http_client=None):
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            http_client=http_client,
        )

    async def revoke_token(self, token: str) -> bool:
        response = await self._send(
            "POST",
            self.revoke_url,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return response.status_code < 400
