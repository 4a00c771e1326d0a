"""One redemption attempt: drive the gift code page for a single player."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .classifier import OutcomeClassifier
from .config import DEFAULT_REDEEM_URL
from .schemas import AttemptOutcome, PlayerIdentity, RetryReason
from .session_pool import ExecutionContext

logger = logging.getLogger("redeembot.redemption")


@dataclass(frozen=True)
class PageSelectors:
    player_input: str = 'input[placeholder="Player ID"]'
    login_button: str = ".login_btn"
    code_input: str = 'input[placeholder="Enter Gift Code"]'
    redeem_button: str = ".exchange_btn"
    status_message: str = ".msg"


class RedemptionAttempt:
    def __init__(
        self,
        classifier: Optional[OutcomeClassifier] = None,
        *,
        url: str = DEFAULT_REDEEM_URL,
        selectors: PageSelectors = PageSelectors(),
        login_timeout_ms: int = 5000,
    ):
        self.classifier = classifier or OutcomeClassifier()
        self.url = url
        self.selectors = selectors
        self.login_timeout_ms = login_timeout_ms

    async def __call__(self, player: PlayerIdentity, code: str, ctx: ExecutionContext) -> AttemptOutcome:
        return await self.attempt(player, code, ctx)

    async def attempt(self, player: PlayerIdentity, code: str, ctx: ExecutionContext) -> AttemptOutcome:
        """Redeem `code` for `player` inside the lent context.

        Never raises for automation failures: they come back as retryable
        outcomes. The page is closed on every path; the context itself is
        released by whoever lent it.
        """
        sel = self.selectors
        page = None
        try:
            page = await ctx.new_page()
            await page.goto(self.url)
            await page.fill(sel.player_input, player.player_id)
            await page.locator(sel.login_button).click()

            # The login button disappears once the player ID is accepted.
            try:
                await page.wait_for_selector(sel.login_button, state="hidden", timeout=self.login_timeout_ms)
            except PlaywrightTimeoutError:
                logger.info("%s: login timed out after %d ms", player.label, self.login_timeout_ms)
                return AttemptOutcome.retryable(RetryReason.LOGIN_TIMEOUT, "check UserID, timed out logging in.")

            await page.fill(sel.code_input, code)
            await page.locator(sel.redeem_button).click()

            message = await page.locator(sel.status_message).text_content()
            outcome = self.classifier.classify((message or "").strip())
            logger.info("%s: %s (%s)", player.label, outcome.kind.value, outcome.detail)
            return outcome
        except Exception as e:
            logger.exception("Error redeeming code for %s", player.label)
            return AttemptOutcome.retryable(RetryReason.UNCLASSIFIED, str(e) or e.__class__.__name__)
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception:
                    logger.debug("page.close() failed for %s", player.label, exc_info=True)
