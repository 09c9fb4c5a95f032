from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..auth import permissions_for
from ..dependencies import Services, get_current_user, get_services
from ..models import (
    AuthProvider,
    AuthResponse,
    ChangePasswordRequest,
    FederatedLoginRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
)
from ..user_store import UserRecord

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterRequest, services: Services = Depends(get_services)) -> AuthResponse:
    user = services.auth.register(payload)
    return AuthResponse(message="User registered successfully", user=user.to_view())


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, services: Services = Depends(get_services)) -> AuthResponse:
    user, tokens = services.auth.login(AuthProvider.LOCAL, {"email": payload.email, "password": payload.password})
    return AuthResponse(message="Login successful", user=user.to_view(), tokens=tokens)


@router.post("/firebase", response_model=AuthResponse)
def firebase_login(payload: FederatedLoginRequest, services: Services = Depends(get_services)) -> AuthResponse:
    user, tokens = services.auth.login(AuthProvider.FIREBASE, {"id_token": payload.id_token})
    return AuthResponse(message="Firebase authentication successful", user=user.to_view(), tokens=tokens)


@router.post("/refresh")
def refresh(payload: RefreshRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    access_token = services.auth.refresh(payload.refresh_token)
    return {"success": True, "message": "Token refreshed successfully", "accessToken": access_token}


@router.get("/me")
def me(user: UserRecord = Depends(get_current_user)) -> Dict[str, Any]:
    return {"success": True, "user": user.to_view()}


@router.get("/permissions")
def permissions(user: UserRecord = Depends(get_current_user)) -> Dict[str, Any]:
    return {"success": True, "role": user.role, "permissions": permissions_for(user.role)}


@router.post("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    services.auth.change_password(user, payload.current_password, payload.new_password)
    return {"success": True, "message": "Password changed successfully"}


@router.post("/logout")
def logout(user: UserRecord = Depends(get_current_user), services: Services = Depends(get_services)) -> Dict[str, Any]:
    services.auth.logout(user)
    return {"success": True, "message": "Logout successful"}
