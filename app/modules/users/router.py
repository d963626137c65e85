from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import get_current_active_user, oauth2_scheme
from app.modules.users.models import User
from app.modules.users import schemas, services

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.post("/register", response_model=schemas.UserProfileResponse, status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: schemas.UserRegistrationRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Register a new user.

    - Checks email and username uniqueness
    - The full name is the legal name typed when signing agreements
    """
    user = await services.UserService.register_user(db, user_data)
    return user


@router.post("/login", response_model=schemas.TokenResponse)
async def login(
    login_data: schemas.UserLoginRequest,
    db: AsyncSession = Depends(get_db)
):
    """Login with email/username and password, returns JWT tokens"""
    user = await services.UserService.authenticate_user(
        db,
        login_data.email_or_username,
        login_data.password
    )

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email/username or password"
        )

    tokens = await services.UserService.create_tokens(user.id)
    return tokens


@router.post("/logout", status_code=status.HTTP_200_OK)
async def logout(
    token: str = Depends(oauth2_scheme),
    current_user: User = Depends(get_current_active_user)
):
    """Logout current user by invalidating the bearer token"""
    await services.UserService.logout_user(token)
    return {"message": "Successfully logged out"}


@router.get("/me", response_model=schemas.UserProfileResponse)
async def get_me(current_user: User = Depends(get_current_active_user)):
    """Get the current user's profile"""
    return current_user


@router.put("/me/payment-methods", response_model=schemas.UserProfileResponse)
async def update_payment_methods(
    data: schemas.PaymentMethodsUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Connect or disconnect Venmo, Cash App, PayPal and Zelle handles"""
    return await services.UserService.update_payment_methods(db, current_user, data)


@router.get("/profiles/{username}", response_model=schemas.PublicProfileResponse)
async def get_public_profile(
    username: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Look up another user's public profile by username"""
    user = await services.UserService.find_by_username(db, username)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
