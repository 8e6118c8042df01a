import pytest

from config import HASH_ALGORITHMS
from errors import ConfigurationError
from visitors import FingerprintGenerator

LENGTHS = {"sha256": 64, "blake2b": 64, "md5": 32, "xxh64": 16, "xxh3_128": 32}


@pytest.mark.parametrize("algorithm", HASH_ALGORITHMS)
def test_fingerprint_is_stable(algorithm):
    gen = FingerprintGenerator("secret", algorithm)
    a = gen.fingerprint("1.2.3.4", "Mozilla/5.0", "example.com", "/a")
    assert a == gen.fingerprint("1.2.3.4", "Mozilla/5.0", "example.com", "/a")
    assert a == FingerprintGenerator("secret", algorithm).fingerprint("1.2.3.4", "Mozilla/5.0", "example.com", "/a")
    assert len(a) == LENGTHS[algorithm] == gen.length
    assert "1.2.3.4" not in a


@pytest.mark.parametrize("algorithm", HASH_ALGORITHMS)
def test_fingerprint_inputs_matter(algorithm):
    gen = FingerprintGenerator("secret", algorithm)
    base = gen.fingerprint("1.2.3.4", "ua", "example.com", "/a")
    assert base != gen.fingerprint("1.2.3.5", "ua", "example.com", "/a")
    assert base != gen.fingerprint("1.2.3.4", "ua2", "example.com", "/a")
    assert base != gen.fingerprint("1.2.3.4", "ua", "example.org", "/a")
    assert base != gen.fingerprint("1.2.3.4", "ua", "example.com", "/b")
    assert base != FingerprintGenerator("other", algorithm).fingerprint("1.2.3.4", "ua", "example.com", "/a")


def test_site_and_page_scopes_differ():
    gen = FingerprintGenerator("secret")
    assert gen.fingerprint("1.2.3.4", "ua", "example.com") != gen.fingerprint("1.2.3.4", "ua", "example.com", "")


def test_fields_do_not_run_together():
    gen = FingerprintGenerator("secret", "xxh64")
    assert gen.fingerprint("1.2.3.4", "ab", "c.com") != gen.fingerprint("1.2.3.4a", "b", "c.com")


def test_long_blake2b_key():
    gen = FingerprintGenerator("k" * 200, "blake2b")
    assert len(gen.fingerprint("1.2.3.4", "ua", "example.com")) == 64


def test_bad_generator():
    with pytest.raises(ConfigurationError):
        FingerprintGenerator("")
    with pytest.raises(ConfigurationError):
        FingerprintGenerator("secret", "crc32")
