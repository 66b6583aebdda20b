from fastapi import Header, HTTPException, Request

from .errors import NotFoundError


def get_current_user(request: Request, authorization: str = Header(...)) -> dict:
    """Resolve the bearer token to a user document.

    Tokens are issued by the session and identity endpoints and carry the
    user id as-is; signing them is the identity provider's business.
    """
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="invalid_token")
    user_id = authorization[len(prefix) :].strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="invalid_token")
    try:
        return request.app.state.users.get(user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail="unknown_user") from None
