"""Best-effort revalidation of an artist's public pages after billing changes.

Nothing in this module raises to the caller: a slow or failing frontend
must never fail a webhook whose billing state has already been stored.
"""

import httpx
import structlog

from sunroad_billing.services.billing_store import BillingStore

logger = structlog.get_logger(__name__)


class CacheInvalidator:
    def __init__(
        self,
        store: BillingStore,
        site_url: str,
        secret: str,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.site_url = site_url.rstrip("/")
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def invalidate_account(self, account_id: str) -> bool:
        """Ask the site to regenerate the account's public profile. Returns True on success."""
        try:
            if not self.site_url:
                logger.warning("revalidation_skipped", reason="public_site_url_not_configured", account_id=account_id)
                return False
            if not self.secret:
                logger.warning("revalidation_skipped", reason="revalidate_secret_not_configured", account_id=account_id)
                return False

            handle = await self.store.find_public_handle(account_id)
            if not handle:
                logger.info("revalidation_skipped", reason="no_public_handle", account_id=account_id)
                return False

            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(
                    f"{self.site_url}/api/revalidate",
                    headers={"x-revalidate-secret": self.secret},
                    json={"tags": [f"artist:{handle}"], "handle": handle},
                )

            if response.is_success:
                logger.info("revalidation_succeeded", handle=handle, account_id=account_id)
                return True

            logger.warning(
                "revalidation_rejected",
                handle=handle,
                status_code=response.status_code,
                body=response.text[:500],
            )
            return False
        except httpx.TimeoutException as e:
            logger.warning("revalidation_timed_out", account_id=account_id, error=str(e))
            return False
        except Exception as e:
            logger.warning(
                "revalidation_failed",
                account_id=account_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
