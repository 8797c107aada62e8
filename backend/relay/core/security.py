from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from relay.core.config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from relay.core.errors import AuthenticationError


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """JWT 액세스 토큰을 생성합니다. (발급은 외부 인증 서비스 담당, 툴링/테스트용)"""
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


class TokenVerifier:
    """
    Verifies bearer tokens issued by the external auth service.
    The gateway and the HTTP layer only ever call `verify`.
    """

    def __init__(self, secret_key: str = SECRET_KEY, algorithm: str = ALGORITHM):
        self.secret_key = secret_key
        self.algorithm = algorithm

    def verify(self, token: Optional[str]) -> int:
        if not token:
            raise AuthenticationError("Missing token")
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            raise AuthenticationError("Could not validate credentials")

        user_id = payload.get("sub")
        if user_id is None:
            raise AuthenticationError("Could not validate credentials")
        try:
            return int(user_id)
        except (TypeError, ValueError):
            raise AuthenticationError("Could not validate credentials")


def extract_websocket_token(websocket: WebSocket) -> Optional[str]:
    """Authorization 헤더(Bearer) 우선, 없으면 ?token= 쿼리 파라미터."""
    header = websocket.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header[7:].strip()
    return websocket.query_params.get("token")


# --- HTTP API 검증 ---

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/v1/auth/login", auto_error=False)


async def get_current_user_id(request: Request, token: Optional[str] = Depends(oauth2_scheme)) -> int:
    """
    FastAPI Dependency: 헤더에서 토큰을 추출하고 검증하여 user_id를 반환합니다.
    """
    verifier: TokenVerifier = request.app.state.services.token_verifier
    try:
        return verifier.verify(token)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
