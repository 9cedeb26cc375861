from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Full name of the user")
    email: EmailStr = Field(..., description="Unique email address")
    password: str = Field(..., min_length=8, max_length=128, description="Account password (min 8 chars)")
    role: str = Field(default="rider", pattern="^(rider|driver)$", description="User role: rider or driver")
    phone_number: str | None = Field(default=None, max_length=30, description="Contact phone number")


class LoginRequest(BaseModel):
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., min_length=1, max_length=128, description="Account password")


class UpdatePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128, description="Password in use today")
    new_password: str = Field(..., min_length=8, max_length=128, description="Replacement password (min 8 chars)")


class TokenResponse(BaseModel):
    access_token: str = Field(..., description="JWT access token")
    token_type: str = Field("bearer", description="Token type (always 'bearer')")
