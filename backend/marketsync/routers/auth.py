from fastapi import APIRouter, Depends, HTTPException, Request

from marketsync.auth import DEMO_PASSWORD, create_access_token, require_identity
from marketsync.models import AuthLoginRequest, AuthLoginResponse, Identity

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
async def login(payload: AuthLoginRequest, http_request: Request):
    user_id = payload.user_id.strip()
    if not user_id or "/" in user_id:
        raise HTTPException(status_code=400, detail="A valid user_id is required")
    if payload.password != DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    await http_request.app.state.user_directory.save_profile(
        user_id,
        display_name=payload.display_name,
        email=payload.email,
        role=payload.role,
    )
    token, expires_at = create_access_token(user_id=user_id)
    return AuthLoginResponse(access_token=token, user_id=user_id, expires_at=expires_at)


@router.get("/me", response_model=Identity)
async def me(identity: Identity = Depends(require_identity)):
    return identity
