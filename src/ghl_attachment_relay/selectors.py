from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SiteSelectors:
    """
    The agency app is a SPA; selectors may change over time.
    Keep all UI selectors/text hooks here for easy maintenance.
    """

    # Login
    email_input: str = 'input[name="email"]'
    password_input: str = 'input[name="password"]'
    submit_button: str = 'button[type="submit"]'

    # Challenge (2FA). The code prompt renders one input per digit.
    challenge_input: str = "input.otp-input"
