import shortuuid


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_short_token(length: int = 12) -> str:
    return shortuuid.ShortUUID().random(length=length)


def generate_correlation_id() -> str:
    return f"msg-{generate_short_token(16)}"
