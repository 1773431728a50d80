# FILE: backend/services/payment_validation.py
"""Business rules checked after the request body has been parsed."""

from backend.core.config import DISALLOWED_EMAIL_DOMAINS, PHONE_REQUIRED_COUNTRIES
from backend.core.errors import BusinessRuleError, ValidationError
from backend.models.user import User
from backend.schemas.billing import CheckoutRequest


def check_email_domain(email: str) -> None:
    domain = email.lower().rsplit("@", 1)[-1]
    for blocked in DISALLOWED_EMAIL_DOMAINS:
        if domain == blocked or domain.endswith("." + blocked):
            raise ValidationError("Temporary email addresses are not allowed", field="customer_info.email")


def check_phone_requirement(country: str, phone: str | None) -> None:
    if country in PHONE_REQUIRED_COUNTRIES and not (phone or "").strip():
        raise ValidationError(
            f"Phone number is required for customers in {country}", field="customer_info.phone"
        )


def check_trial_eligibility(user: User) -> None:
    if user.trial_used:
        raise BusinessRuleError("Free trial has already been used on this account")


def validate_checkout(req: CheckoutRequest, user: User) -> None:
    check_email_domain(req.customer_info.email)
    check_phone_requirement(req.customer_info.country, req.customer_info.phone)
    if req.is_trial:
        check_trial_eligibility(user)
