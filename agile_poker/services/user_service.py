from __future__ import annotations
import logging
from ..errors import ValidationError
from ..models import ClientContext, SignInIn, User
from ..storage import DataClient

logger = logging.getLogger(__name__)


def validate_sign_in(payload: SignInIn, email_domain: str) -> tuple[str, str]:
    email = payload.email.strip().lower()
    name = payload.name.strip()
    if not email:
        raise ValidationError("Please enter your email")
    if not email.endswith(f"@{email_domain}"):
        raise ValidationError(f"Email must end with @{email_domain}")
    if not name:
        raise ValidationError("Please enter your name")
    return email, name


def sign_in(client: DataClient, payload: SignInIn, email_domain: str) -> User:
    """Create the user on first sign-in, rename it if the name changed."""
    email, name = validate_sign_in(payload, email_domain)
    user = client.get_user_by_email(email)
    if user is None:
        user = client.insert_user(email=email, name=name)
        logger.info("New user %s (%s)", user.id, email)
    elif user.name != name:
        user = client.update_user(user.id, name=name)
        logger.info("User %s renamed to %s", user.id, name)
    return user


def context_for(user: User) -> ClientContext:
    return ClientContext(user_id=user.id, email=user.email, name=user.name)
