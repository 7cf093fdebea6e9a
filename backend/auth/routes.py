from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from auth.models import LoginRequest, RegisterRequest, TokenResponse, UserResponse
from auth.utils import (
    create_token,
    get_current_user,
    hash_password,
    normalize_username,
    verify_password,
)
from db.database import get_db
from db.models import User

router = APIRouter(prefix="/auth", tags=["auth"])


def _clean(value: str | None) -> str | None:
    text = " ".join((value or "").strip().split())
    return text or None


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(req: RegisterRequest, db: Session = Depends(get_db)):
    normalized_username = normalize_username(req.username)
    if len(normalized_username) < 3:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username must be at least 3 characters")

    if db.query(User).filter(User.username_normalized == normalized_username).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already taken")

    user = User(
        username=" ".join(req.username.strip().split()),
        username_normalized=normalized_username,
        password_hash=hash_password(req.password),
        display_name=req.display_name,
        email=_clean(req.email),
        contact_number=_clean(req.contact_number),
        address_line1=_clean(req.address_line1),
        address_line2=_clean(req.address_line2),
        pincode=_clean(req.pincode),
        role="user",
        token_version=0,
    )
    db.add(user)
    db.commit()
    return TokenResponse(access_token=create_token(user.id, role=user.role, token_version=user.token_version))


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    normalized_username = normalize_username(req.username)
    user = db.query(User).filter(User.username_normalized == normalized_username).first()
    if not user or not verify_password(req.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return TokenResponse(access_token=create_token(user.id, role=user.role, token_version=user.token_version))


@router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)):
    return user
