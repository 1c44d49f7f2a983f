"""
认证模块。

- 管理后台：bcrypt 密码、HS256 JWT、连续失败锁定
- 买家 / 批发商：X-Account-Id + X-Account-Key 请求头

两者均以 FastAPI 依赖项的形式提供给路由层。
"""

import logging
import os
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from subshop.database import format_time, parse_time, transaction
from subshop.models.schemas import Account
from subshop.services.account_service import AccountService
from subshop.services.errors import AccountNotFound

logger = logging.getLogger(__name__)

JWT_SECRET = os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24

MAX_LOGIN_FAILURES = 5
LOCKOUT_MINUTES = 15


# ── 密码 / 令牌 ──────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(username: str) -> str:
    """签发管理员令牌，有效期 JWT_EXPIRE_HOURS 小时。"""
    claims = {
        "sub": username,
        "scope": "admin",
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    Raises:
        ValueError: 签名错误、已过期或缺少 sub。
    """
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}")
    if not claims.get("sub"):
        raise ValueError("令牌缺少用户信息")
    return claims


# ── 管理员登录 ────────────────────────────────────────────

def authenticate(username: str, password: str, now: datetime | None = None) -> dict:
    """
    管理员登录。

    锁定到期后失败计数从 0 重新开始；失败计数在抛错之前已提交。

    Returns:
        {"code": 1, "token": "..."}

    Raises:
        ValueError: 用户名或密码错误、账号锁定中。
    """
    now = now or datetime.now()
    error = None

    with transaction() as db:
        admin = db.execute(
            "SELECT id, password_hash, login_fail_count, locked_until FROM admin WHERE username = ?",
            (username,),
        ).fetchone()
        if admin is None:
            error = "用户名或密码错误"
        else:
            locked_until = parse_time(admin["locked_until"])
            failures = admin["login_fail_count"]
            if locked_until is not None and now < locked_until:
                error = "账号已锁定，请稍后再试"
            else:
                if locked_until is not None:
                    failures = 0

                if verify_password(password, admin["password_hash"]):
                    failures, new_lock = 0, None
                else:
                    failures += 1
                    new_lock = None
                    if failures >= MAX_LOGIN_FAILURES:
                        new_lock = format_time(now + timedelta(minutes=LOCKOUT_MINUTES))
                        logger.warning("管理员 %s 连续登录失败 %d 次，已锁定", username, failures)
                    error = "用户名或密码错误"

                db.execute(
                    "UPDATE admin SET login_fail_count = ?, locked_until = ? WHERE id = ?",
                    (failures, new_lock, admin["id"]),
                )

    if error:
        raise ValueError(error)
    logger.info("管理员登录: %s", username)
    return {"code": 1, "token": create_token(username)}


# ── FastAPI 依赖项 ────────────────────────────────────────

def _request_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):] or None
    return request.cookies.get("token")


def get_current_admin(request: Request) -> dict:
    """
    管理后台依赖项：令牌取自 Authorization: Bearer，其次 cookie "token"。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    token = _request_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")
    try:
        return verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")


def get_current_account(request: Request) -> Account:
    """
    买家接口依赖项：校验 X-Account-Id / X-Account-Key。

    Raises:
        HTTPException(401): 缺少请求头、账户不存在、密钥错误或账户已封禁。
    """
    account_id = request.headers.get("X-Account-Id")
    key = request.headers.get("X-Account-Key")
    if not account_id or not key:
        raise HTTPException(status_code=401, detail="缺少账户认证信息")

    try:
        return AccountService().authenticate(account_id, key)
    except AccountNotFound as e:
        raise HTTPException(status_code=401, detail=e.msg)
