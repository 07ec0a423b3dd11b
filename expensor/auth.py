"""
Authorised HTTP session from a previously stored OAuth token.

Obtaining the token (consent flow) happens elsewhere; this module only loads
and refreshes it.
"""

import logging
import os
from typing import Sequence

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import AuthorizedSession, Request
from google.oauth2.credentials import Credentials

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def authorized_session(token_file: str, scopes: Sequence[str]) -> AuthorizedSession:
    """
    Build a requests-compatible session carrying the stored credentials.

    Raises:
        ConfigurationError: token missing, unreadable or not refreshable
    """
    if not os.path.exists(token_file):
        raise ConfigurationError(f"OAuth token file {token_file} not found")
    try:
        credentials = Credentials.from_authorized_user_file(token_file, list(scopes))
    except (ValueError, OSError) as e:
        raise ConfigurationError(f"Invalid OAuth token file {token_file}: {e}") from e

    if not credentials.valid:
        if not (credentials.expired and credentials.refresh_token):
            raise ConfigurationError(f"OAuth token in {token_file} is invalid and cannot be refreshed")
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            raise ConfigurationError(f"Refreshing OAuth token failed: {e}") from e
        logger.info("Refreshed OAuth access token")

    logger.info(f"Loaded OAuth credentials for scopes: {', '.join(scopes)}")
    return AuthorizedSession(credentials)
