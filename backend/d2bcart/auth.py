# Password, token and OTP handling

import hashlib # Use simple hashing
import random
import string
from datetime import datetime, timedelta
from typing import Optional

# For Google OAuth
from authlib.integrations.starlette_client import OAuth

# For creating/decoding JWTs (JSON Web Tokens)
from jose import jwt, JWTError

from fastapi import Depends, HTTPException, status, BackgroundTasks
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.concurrency import run_in_threadpool
from fastapi_mail import FastMail, MessageSchema, ConnectionConfig, MessageType

from d2bcart.database import get_retailer_by_email, get_manufacturer_by_email, get_admin_by_email
from d2bcart.db_models import Admin, Manufacturer, Retailer
from d2bcart.config import (
    SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES,
    MAIL_USERNAME, MAIL_PASSWORD, MAIL_PORT, MAIL_SERVER, MAIL_SUPPRESS_SEND,
    GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET_KEY,
)

#--------------------------------------------------------------------------------------------------------------------------------------------

# 1. OTP mails

def generate_otp() -> str:
    return "".join(random.choices(string.digits, k=6))

mail_config = ConnectionConfig(
    MAIL_USERNAME = MAIL_USERNAME,
    MAIL_PASSWORD = MAIL_PASSWORD,
    MAIL_FROM = MAIL_USERNAME,
    MAIL_PORT = MAIL_PORT,
    MAIL_SERVER = MAIL_SERVER,
    MAIL_STARTTLS = True,
    MAIL_SSL_TLS = False,
    USE_CREDENTIALS = True,
    VALIDATE_CERTS = True,
    SUPPRESS_SEND = 1 if MAIL_SUPPRESS_SEND else 0
)

def _queue_mail(subject: str, email: str, body: str, background_tasks: BackgroundTasks):
    message = MessageSchema(
        subject=subject,
        recipients=[email],
        body=body,
        subtype=MessageType.html
    )
    fm = FastMail(mail_config)
    background_tasks.add_task(fm.send_message, message)


async def send_otp_email(email: str, otp: str, background_tasks: BackgroundTasks):
    _queue_mail("D2B Cart - Password Reset OTP", email, f"""
        <h3>Password Reset Request</h3>
        <p>Your OTP for resetting your password is:</p>
        <h1 style='color: #FF4B2B;'>{otp}</h1>
        <p>This OTP is valid for 10 minutes.</p>
        <p>If you did not request this, please ignore this email.</p>
        """, background_tasks)


async def send_verification_email(email: str, otp: str, background_tasks: BackgroundTasks):
    _queue_mail("D2B Cart - Verify your Account", email, f"""
        <h3>Welcome to D2B Cart!</h3>
        <p>Please verify your business email to start buying and selling wholesale.</p>
        <p>Your Verification OTP is:</p>
        <h1 style='color: #4CAF50;'>{otp}</h1>
        <p>This OTP is valid for 30 minutes.</p>
        """, background_tasks)

#--------------------------------------------------------------------------------------------------------------------------------------------

# 2. Managing Passwords (Simple hashlib.sha256)

def hash_password(password: str):
    return hashlib.sha256(password.encode()).hexdigest()


def verify_password(input_password: str, hashed_password: str):
    if not hashed_password:
        return False
    return hash_password(input_password) == hashed_password

#--------------------------------------------------------------------------------------------------------------------------------------------

# 3. JWT Tokens

# Looks for the "Authorization: Bearer <token>" header
bearer_scheme = HTTPBearer()
optional_bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _credentials_exception():
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


# Returns the email in the token if it was issued for `role`
def _email_for_role(token: str, role: str) -> str:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise _credentials_exception()

    user_mail: str = payload.get("sub")
    if user_mail is None or payload.get("role") != role:
        raise _credentials_exception()
    return user_mail


async def get_current_retailer(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> Retailer:
    user_mail = _email_for_role(creds.credentials, "retailer")
    user = await run_in_threadpool(get_retailer_by_email, mail=user_mail)
    if user is None:
        raise _credentials_exception()
    return user


async def get_current_manufacturer(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> Manufacturer:
    user_mail = _email_for_role(creds.credentials, "manufacturer")
    user = await run_in_threadpool(get_manufacturer_by_email, mail=user_mail)
    if user is None:
        raise _credentials_exception()
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Manufacturer account is deactivated")
    return user


async def get_current_admin(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> Admin:
    user_mail = _email_for_role(creds.credentials, "admin")
    user = await run_in_threadpool(get_admin_by_email, mail=user_mail)
    if user is None:
        raise _credentials_exception()
    return user


# Catalog downloads and tracking work for guests too
async def get_optional_retailer(creds: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer_scheme)) -> Optional[Retailer]:
    if creds is None:
        return None
    try:
        user_mail = _email_for_role(creds.credentials, "retailer")
    except HTTPException:
        return None
    return await run_in_threadpool(get_retailer_by_email, mail=user_mail)

#--------------------------------------------------------------------------------------------------------------------------------------------

# 4. Google Auth Configuration
oauth = OAuth()

oauth.register(
    name = "google",
    client_id = GOOGLE_CLIENT_ID,
    client_secret = GOOGLE_CLIENT_SECRET_KEY,
    server_metadata_url = "https://accounts.google.com/.well-known/openid-configuration",
    client_kwargs = {
        'scope' : 'openid email profile'
    }
)
