import os
import sys
from typing import Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import ConfigurationError

HASH_ALGORITHMS = ("sha256", "blake2b", "md5", "xxh64", "xxh3_128")


class Config(BaseModel):
    """
    Process-wide settings. Built once at startup by load_config() and handed
    to every component that needs it; instances are immutable.
    """
    model_config = ConfigDict(frozen=True)

    web_host: str = "0.0.0.0"
    web_port: int = Field(default=8080, ge=1, le=65535)
    cors: str = "*"

    # Fingerprint key and digest
    secret: str = Field(min_length=1)
    hash_algorithm: str = "sha256"

    admin_token: str = ""
    jwt_secret: str = ""

    # Persistence
    db_path: str = "./db/counter.db"
    save_interval: float = Field(default=30, gt=0)
    save_timeout: float = Field(default=10, gt=0)

    # Recent-fingerprint sets
    uv_exact_limit: int = Field(default=4096, ge=0)
    uv_capacity: int = Field(default=100_000, ge=1)
    uv_error_rate: float = Field(default=0.001, gt=0, lt=1)

    shards: int = Field(default=64, ge=1, le=4096)
    dev: bool = False

    @field_validator("hash_algorithm")
    @classmethod
    def check_algorithm(cls, v: str) -> str:
        v = v.lower()
        if v not in HASH_ALGORITHMS:
            raise ValueError(f"unknown hash algorithm {v!r}, expected one of {', '.join(HASH_ALGORITHMS)}")
        return v

    def cors_origins(self) -> list[str]:
        if self.cors.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.cors.split(",") if o.strip()]


# env var -> field
ENVIRONMENT = {
    "BSZ_SECRET": "secret",
    "BSZ_ENCRYPT": "hash_algorithm",
    "WEB_CORS": "cors",
    "ADMIN_TOKEN": "admin_token",
    "JWT_SECRET": "jwt_secret",
    "DB_FILE": "db_path",
    "SAVE_INTERVAL": "save_interval",
    "SAVE_TIMEOUT": "save_timeout",
    "UV_EXACT_LIMIT": "uv_exact_limit",
    "UV_CAPACITY": "uv_capacity",
    "UV_ERROR_RATE": "uv_error_rate",
    "STORE_SHARDS": "shards",
}


def split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.strip().rpartition(":")
    if not sep or not host:
        raise ConfigurationError(f"WEB_ADDRESS must look like host:port, got {address!r}")
    try:
        return host.strip("[]"), int(port)
    except ValueError:
        raise ConfigurationError(f"WEB_ADDRESS has a bad port: {address!r}")


def load_config(environ: Mapping[str, str] | None = None, argv: Sequence[str] | None = None,
                token_dir: str = "auth") -> Config:
    """
    Reads the environment once. Secrets that are not provided are generated
    on first start and kept under token_dir, like the JWT secret.
    """
    from utils import persistent_token
    if environ is None:
        environ = os.environ
    if argv is None:
        argv = sys.argv

    values: dict = {}
    for var, field in ENVIRONMENT.items():
        if environ.get(var):
            values[field] = environ[var]
    if environ.get("WEB_ADDRESS"):
        values["web_host"], values["web_port"] = split_address(environ["WEB_ADDRESS"])
    values["dev"] = "dev" in argv

    try:
        if "secret" not in values:
            values["secret"] = persistent_token(32, "BSZ_SECRET", token_dir)
        if "jwt_secret" not in values:
            values["jwt_secret"] = persistent_token(32, "JWT_SECRET", token_dir)
    except OSError as e:
        raise ConfigurationError(f"could not read or create secrets in {token_dir}: {e}")

    try:
        return Config(**values)
    except ValidationError as e:
        raise ConfigurationError(f"bad configuration: {e}")
