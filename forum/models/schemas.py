from pydantic import BaseModel, EmailStr, constr, field_validator
import re


PW_REGEX = re.compile(r"^(?=.*[A-Za-z])(?=.*\d)[A-Za-z\d@$!%*#?&]{8,}$")

class UserCreate(BaseModel):
    username: constr(min_length=3, max_length=32)
    email: EmailStr
    password: constr(min_length=8)


    @field_validator("password")
    def strong_password(cls, v) -> str:
        if not PW_REGEX.fullmatch(v):
            raise ValueError(
                "Password must be ≥8 chars and contain letters & digits"
            )
        return v

class UserOut(BaseModel):
    id: int
    username: str
    email: str
    role: str

class Token(BaseModel):
    access_token: str
    refresh_token: str 
    token_type: str

class RefreshIn(BaseModel):
    refresh_token: str

class VerifyIn(BaseModel):
    token: str

class VerifyOut(BaseModel):
    valid: bool = True
    # string on the wire; the forum service parses it
    user_id: str
    username: str
