"""Input validation for auth and poll forms.

Features:
- Email format
- Password complexity and common-password denylist
- UUID-format identifiers
- Poll question/option sanitation and limits
"""

import re
from typing import List, Optional, Tuple

import structlog

from pollguard.utils.constants import (
    COMMON_PASSWORDS,
    MAX_OPTION_LENGTH,
    MAX_OPTIONS,
    MAX_QUESTION_LENGTH,
    MIN_NAME_LENGTH,
    MIN_OPTIONS,
    MIN_PASSWORD_LENGTH,
)

logger = structlog.get_logger()


class InputValidator:
    """Field-level validation returning user-facing messages."""

    EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
    UUID_PATTERN = re.compile(
        r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
        re.IGNORECASE,
    )
    HTML_TAG_PATTERN = re.compile(r"<[^>]*>")

    # (pattern, message) pairs checked in order after length and denylist
    PASSWORD_RULES: List[Tuple[re.Pattern[str], str]] = [
        (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
        (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
        (re.compile(r"[0-9]"), "Password must contain at least one number"),
        (
            re.compile(r"[^A-Za-z0-9]"),
            "Password must contain at least one special character",
        ),
    ]

    def validate_email(self, email: Optional[str]) -> Optional[str]:
        """Return an error message, or None when email is valid."""
        if not email:
            return "Email is required"
        if not self.EMAIL_PATTERN.match(email.strip()):
            return "Please enter a valid email address"
        return None

    def validate_password(self, password: Optional[str]) -> Tuple[bool, Optional[str]]:
        """Check password complexity.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            return (
                False,
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
            )

        if password.lower() in COMMON_PASSWORDS:
            return (
                False,
                "This password is too common. Please choose a more unique password",
            )

        for pattern, message in self.PASSWORD_RULES:
            if not pattern.search(password):
                return False, message

        return True, None

    def validate_login_form(
        self, email: Optional[str], password: Optional[str]
    ) -> Optional[str]:
        """Validate sign-in input (presence only for the password)."""
        email_error = self.validate_email(email)
        if email_error:
            return email_error
        if not password:
            return "Please enter your password"
        return None

    def validate_register_form(
        self, email: Optional[str], password: Optional[str], name: Optional[str]
    ) -> Optional[str]:
        """Validate sign-up input."""
        email_error = self.validate_email(email)
        if email_error:
            return email_error

        valid, message = self.validate_password(password)
        if not valid:
            return message

        if not name or len(name.strip()) < MIN_NAME_LENGTH:
            return (
                f"Please enter a valid name (minimum {MIN_NAME_LENGTH} characters)"
            )
        return None

    def is_valid_id(self, value: Optional[str]) -> bool:
        """Check UUID format for poll and option ids."""
        return bool(value) and bool(self.UUID_PATTERN.match(value or ""))

    def sanitize_text(self, text: Optional[str]) -> str:
        """Strip HTML tags and surrounding whitespace."""
        if not text:
            return ""
        return self.HTML_TAG_PATTERN.sub("", text).strip()

    def validate_question(self, question: Optional[str]) -> Tuple[bool, str, Optional[str]]:
        """Sanitize and check a poll question.

        Returns:
            Tuple of (is_valid, sanitized_question, error_message)
        """
        sanitized = self.sanitize_text(question)
        if not sanitized:
            return False, sanitized, "Question is required"
        if len(sanitized) > MAX_QUESTION_LENGTH:
            return (
                False,
                sanitized,
                f"Question must be {MAX_QUESTION_LENGTH} characters or less",
            )
        return True, sanitized, None

    def validate_options(
        self, options: List[str]
    ) -> Tuple[bool, List[str], Optional[str]]:
        """Sanitize and check poll options.

        Blank entries are dropped before counting.

        Returns:
            Tuple of (is_valid, sanitized_options, error_message)
        """
        sanitized = [self.sanitize_text(option) for option in options]
        sanitized = [option for option in sanitized if option]

        if len(sanitized) < MIN_OPTIONS:
            return False, sanitized, f"Please provide at least {MIN_OPTIONS} options"
        if len(sanitized) > MAX_OPTIONS:
            return False, sanitized, f"Maximum {MAX_OPTIONS} options allowed"
        if len({option.lower() for option in sanitized}) != len(sanitized):
            return False, sanitized, "All options must be unique"
        if any(len(option) > MAX_OPTION_LENGTH for option in sanitized):
            return (
                False,
                sanitized,
                f"Options must be {MAX_OPTION_LENGTH} characters or less",
            )
        return True, sanitized, None

    def validate_poll_form(
        self, question: Optional[str], options: List[str]
    ) -> Tuple[Optional[str], str, List[str]]:
        """Validate a whole poll form.

        Returns:
            Tuple of (error_message, sanitized_question, sanitized_options)
        """
        valid, clean_question, error = self.validate_question(question)
        if not valid:
            logger.debug("Poll question rejected", reason=error)
            return error, clean_question, []

        valid, clean_options, error = self.validate_options(options)
        if not valid:
            logger.debug("Poll options rejected", reason=error)
            return error, clean_question, clean_options

        return None, clean_question, clean_options
