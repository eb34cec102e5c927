import time

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.secret, salt="csrf-token")


def generate_csrf_token(session_id: str = "anonymous", max_age_hours: int = 2) -> str:
    serializer = _serializer()
    timestamp = int(time.time())
    expiry = timestamp + (max_age_hours * 3600)

    token_data = {"s": session_id, "ts": timestamp, "exp": expiry}

    return serializer.dumps(token_data)


def validate_csrf_token(token: str, session_id: str = "anonymous") -> bool:
    serializer = _serializer()
    try:
        data = serializer.loads(token)
    except BadSignature:
        return False

    if data.get("s") != session_id:
        return False

    if int(time.time()) > data.get("exp", 0):
        return False

    return True
