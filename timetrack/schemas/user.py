from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

MIN_PASSWORD_LENGTH = 6


class SignupRequest(BaseModel):
    emp_code: str
    password: str
    emp_name: Optional[str] = None


class LoginRequest(BaseModel):
    emp_code: str
    password: str


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken")


class PasswordUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_password: str = Field(alias="newPassword")


class Favorite(BaseModel):
    job_no: str = Field(min_length=1)
    job_name: str = Field(min_length=1)
    acc_no: str = Field(min_length=1)
    acc_name: str = Field(min_length=1)


class FavoriteAdd(BaseModel):
    favorite: Favorite
    emp_code: Optional[str] = None


class FavoriteRemove(BaseModel):
    job_no: str = Field(min_length=1)
    emp_code: Optional[str] = None
