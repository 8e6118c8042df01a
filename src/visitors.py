import hashlib
import hmac

import xxhash

from config import HASH_ALGORITHMS, Config
from errors import ConfigurationError

# Separates fields so ("a", "bc") and ("ab", "c") never hash alike
_SEP = b"\x1f"


class FingerprintGenerator:
    """
    Derives the per-scope visitor token used to deduplicate unique visitors.

    Tokens are keyed with a server-held secret, so they cannot be recomputed
    (or enumerated from the address space) without it. The xxhash variants
    are the fast choice; the HMAC/BLAKE2 variants are the one-way ones.
    """

    def __init__(self, secret: str, algorithm: str = "sha256"):
        if not secret:
            raise ConfigurationError("fingerprint secret must not be empty")
        if algorithm not in HASH_ALGORITHMS:
            raise ConfigurationError(f"unknown hash algorithm: {algorithm}")
        self.algorithm = algorithm
        self._key = secret.encode("utf-8")
        self._digest = self._pick(algorithm)

    @staticmethod
    def from_config(config: Config) -> "FingerprintGenerator":
        return FingerprintGenerator(config.secret, config.hash_algorithm)

    def _pick(self, algorithm: str):
        key = self._key
        if algorithm == "xxh64":
            return lambda msg: xxhash.xxh64_hexdigest(key + _SEP + msg)
        if algorithm == "xxh3_128":
            return lambda msg: xxhash.xxh3_128_hexdigest(key + _SEP + msg)
        if algorithm == "blake2b":
            # BLAKE2 keys are capped at 64 bytes
            bkey = key if len(key) <= 64 else hashlib.sha256(key).digest()
            return lambda msg: hashlib.blake2b(msg, key=bkey, digest_size=32).hexdigest()
        return lambda msg: hmac.new(key, msg, algorithm).hexdigest()

    @property
    def length(self) -> int:
        return len(self._digest(b""))

    def fingerprint(self, client_address: str, user_agent: str, site: str, page: str | None = None) -> str:
        scope = "site" if page is None else "page"
        # Address and user agent only: no busuanziId cookie is read or set
        parts = [scope, site, page or "", client_address or "", user_agent or ""]
        return self._digest(_SEP.join(p.encode("utf-8", "surrogatepass") for p in parts))
