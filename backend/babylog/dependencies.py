# babylog/dependencies.py

from fastapi import Depends
from sqlalchemy.orm import Session

from .auth import get_clock
from .authenticator import CredentialAuthenticator
from .database import get_db
from .login_limiter import LoginLimiter, get_login_limiter


def get_authenticator(
    db: Session = Depends(get_db),
    limiter: LoginLimiter = Depends(get_login_limiter),
    clock=Depends(get_clock),
) -> CredentialAuthenticator:
    """
    Router-friendly wrapper: one authenticator per request, sharing the
    process-wide attempt ledger.

    Tests override get_db / get_login_limiter / get_clock and this picks
    them up.
    """
    return CredentialAuthenticator(db, limiter, now=clock)
