from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Union

from credlife.config import Settings, settings
from credlife.schemas.credentials import AttemptKind, Purpose
from credlife.schemas.errors import RateLimitExceeded
from credlife.services.store import CredentialStore

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitRule:
    max_attempts: int
    window: timedelta
    failures_only: bool = False


RuleKey = tuple[Purpose, AttemptKind]
Rules = Union[RateLimitRule, tuple[RateLimitRule, ...]]


def default_rules(config: Settings = settings) -> dict[RuleKey, Rules]:
    sms_send = RateLimitRule(
        config.sms_send_max, timedelta(minutes=config.sms_send_window_minutes)
    )
    verify = RateLimitRule(
        config.otp_verify_max,
        timedelta(minutes=config.otp_verify_window_minutes),
        failures_only=True,
    )
    return {
        (Purpose.SMS_ENROLL, AttemptKind.ISSUE): sms_send,
        (Purpose.SMS_LOGIN, AttemptKind.ISSUE): sms_send,
        (Purpose.TOTP_ENROLL, AttemptKind.ISSUE): RateLimitRule(
            config.totp_setup_max, timedelta(minutes=config.totp_setup_window_minutes)
        ),
        (Purpose.PASSWORD_RESET, AttemptKind.ISSUE): RateLimitRule(
            config.password_reset_max,
            timedelta(minutes=config.password_reset_window_minutes),
        ),
        # Checked in order: daily cap, then resend cooldown.
        (Purpose.EMAIL_VERIFY, AttemptKind.ISSUE): (
            RateLimitRule(
                config.email_verify_max,
                timedelta(minutes=config.email_verify_window_minutes),
            ),
            RateLimitRule(1, timedelta(minutes=config.email_verify_cooldown_minutes)),
        ),
        (Purpose.SMS_ENROLL, AttemptKind.VERIFY): verify,
        (Purpose.SMS_LOGIN, AttemptKind.VERIFY): verify,
        (Purpose.TOTP_ENROLL, AttemptKind.VERIFY): verify,
        (Purpose.RECOVERY_CODE, AttemptKind.VERIFY): verify,
        (Purpose.TOTP_LOGIN, AttemptKind.VERIFY): verify,
    }


class RateLimiter:
    """Trailing-window counter over the attempt log.

    The count and the later write are not atomic, so concurrent callers may
    each slip one extra attempt through.
    """

    def __init__(
        self,
        store: CredentialStore,
        rules: Optional[Mapping[RuleKey, Rules]] = None,
        clock: Clock = _utcnow,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._rules = dict(default_rules() if rules is None else rules)
        self._clock = clock
        self._enabled = enabled

    def rules_for(self, purpose: Purpose, kind: AttemptKind) -> tuple[RateLimitRule, ...]:
        rules = self._rules.get((purpose, kind), ())
        if isinstance(rules, RateLimitRule):
            return (rules,)
        return tuple(rules)

    def check(self, identity_id: int, purpose: Purpose, kind: AttemptKind) -> None:
        if not self._enabled:
            return
        now = self._clock()
        for rule in self.rules_for(purpose, kind):
            self._check_rule(identity_id, purpose, kind, rule, now)

    def _check_rule(
        self,
        identity_id: int,
        purpose: Purpose,
        kind: AttemptKind,
        rule: RateLimitRule,
        now: datetime,
    ) -> None:
        since = now - rule.window
        count = self._store.count_attempts(
            identity_id, purpose, kind, since, failures_only=rule.failures_only
        )
        if count < rule.max_attempts:
            return
        oldest = self._store.oldest_attempt(
            identity_id, purpose, kind, since, failures_only=rule.failures_only
        )
        retry_after = self._retry_after(oldest, rule.window, now)
        LOGGER.warning(
            "Rate limit hit identity=%s purpose=%s kind=%s count=%s retry_after=%s",
            identity_id,
            purpose.value,
            kind.value,
            count,
            retry_after,
        )
        raise RateLimitExceeded(purpose.value, kind.value, retry_after)

    @staticmethod
    def _retry_after(
        oldest: Optional[datetime], window: timedelta, now: datetime
    ) -> int:
        if oldest is None:
            return max(1, math.ceil(window.total_seconds()))
        remaining = (oldest + window - now).total_seconds()
        return max(1, math.ceil(remaining))
