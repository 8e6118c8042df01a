# Recent-fingerprint sets. A Bloom filter never forgets a visitor (no UV
# overcount); its false positives undercount UV at about error_rate.

import math

import xxhash


def _hash_pair(item: str) -> tuple[int, int]:
    """ Two 64-bit hashes from one XXH3-128 digest, for double hashing. """
    h = xxhash.xxh3_128_intdigest(item.encode("utf-8", "surrogatepass"))
    h1 = h & 0xFFFFFFFFFFFFFFFF
    # h2 must be odd so every probe sequence covers the table
    h2 = (h >> 64) | 1
    return h1, h2


class BloomFilter:
    def __init__(self, capacity: int, error_rate: float):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if not 0 < error_rate < 1:
            raise ValueError(f"error_rate must be in (0, 1), got {error_rate}")
        self.capacity = capacity
        self.error_rate = error_rate
        self.num_bits = max(8, math.ceil(-capacity * math.log(error_rate) / (math.log(2) ** 2)))
        self.num_hashes = max(1, round(self.num_bits / capacity * math.log(2)))
        self._bits = bytearray((self.num_bits + 7) // 8)
        self.inserted = 0

    def _positions(self, item: str):
        h1, h2 = _hash_pair(item)
        for i in range(self.num_hashes):
            yield (h1 + i * h2) % self.num_bits

    def add(self, item: str) -> bool:
        """ Sets the item's bits. Returns True if at least one bit was unset. """
        new = False
        for pos in self._positions(item):
            byte, bit = divmod(pos, 8)
            mask = 1 << bit
            if not self._bits[byte] & mask:
                self._bits[byte] |= mask
                new = True
        if new:
            self.inserted += 1
        return new

    def __contains__(self, item: str) -> bool:
        for pos in self._positions(item):
            byte, bit = divmod(pos, 8)
            if not self._bits[byte] & (1 << bit):
                return False
        return True

    def __len__(self) -> int:
        return self.inserted

    @property
    def size_bytes(self) -> int:
        return len(self._bits)


class FingerprintSet:
    """
    Exact set of fingerprints that turns itself into a BloomFilter past
    exact_limit entries. Not thread safe; the owning record's lock guards it.
    """
    __slots__ = ("exact_limit", "capacity", "error_rate", "_exact", "_bloom")

    def __init__(self, exact_limit: int = 4096, capacity: int = 100_000, error_rate: float = 0.001):
        self.exact_limit = exact_limit
        self.capacity = max(capacity, exact_limit)
        self.error_rate = error_rate
        self._exact: set[str] | None = set()
        self._bloom: BloomFilter | None = None

    @property
    def approximate(self) -> bool:
        return self._bloom is not None

    def add(self, fingerprint: str) -> bool:
        """ Returns True if the fingerprint had not been seen before. """
        if self._bloom is not None:
            return self._bloom.add(fingerprint)
        assert self._exact is not None
        if fingerprint in self._exact:
            return False
        self._exact.add(fingerprint)
        if len(self._exact) > self.exact_limit:
            self._promote()
        return True

    def _promote(self):
        assert self._exact is not None
        bloom = BloomFilter(self.capacity, self.error_rate)
        for fp in self._exact:
            bloom.add(fp)
        # Count every exact entry, even ones that collided while promoting
        bloom.inserted = len(self._exact)
        self._bloom = bloom
        self._exact = None

    def __contains__(self, fingerprint: str) -> bool:
        if self._bloom is not None:
            return fingerprint in self._bloom
        assert self._exact is not None
        return fingerprint in self._exact

    def __len__(self) -> int:
        if self._bloom is not None:
            return len(self._bloom)
        assert self._exact is not None
        return len(self._exact)
