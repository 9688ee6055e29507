import secrets

RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_link_token(num_bytes: int = 32) -> str:
    return secrets.token_urlsafe(num_bytes)


def generate_otp(length: int = 6) -> str:
    value = secrets.randbelow(10**length)
    return str(value).zfill(length)


def generate_recovery_codes(count: int = 10, length: int = 10) -> list[str]:
    if count < 1:
        raise ValueError("Recovery code count must be positive")
    if not 8 <= length <= 10:
        raise ValueError("Recovery codes must be 8 to 10 characters")
    codes: list[str] = []
    seen: set[str] = set()
    while len(codes) < count:
        code = "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(length))
        if code in seen:
            continue
        seen.add(code)
        codes.append(code)
    return codes


def normalize_recovery_code(raw: str) -> str:
    return "".join(ch for ch in raw if ch not in " -\t").upper()


def normalize_otp(raw: str) -> str:
    return "".join(raw.split())
