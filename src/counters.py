"""
In-memory counter store. Shard locks guard the mappings only, each record's
own lock guards its values. Deleted records are marked retired.
"""
import threading
from typing import Callable, Iterable

import xxhash

from config import Config
from errors import InvalidCount, NotFound
from models.generic import U64_MAX, Counts, EventCounts, PageSnapshot, SiteSnapshot, StoreStats
from sketch import FingerprintSet
from utils import LOG, normalize_page, normalize_site
from visitors import FingerprintGenerator


def saturating_add(value: int, delta: int = 1) -> int:
    return min(value + delta, U64_MAX)


def check_count(name: str, value: int | None):
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= U64_MAX:
        raise InvalidCount(f"{name} must be an integer between 0 and {U64_MAX}, got {value!r}")


class CounterRecord:
    __slots__ = ("pv", "uv", "fingerprints", "lock", "retired")

    def __init__(self, fingerprints: FingerprintSet, pv: int = 0, uv: int = 0):
        self.pv = pv
        self.uv = uv
        self.fingerprints = fingerprints
        self.lock = threading.Lock()
        self.retired = False

    # The methods below expect self.lock to be held.

    def hit(self, fingerprint: str) -> Counts:
        self.pv = saturating_add(self.pv)
        if self.fingerprints.add(fingerprint):
            self.uv = saturating_add(self.uv)
        return Counts(pv=self.pv, uv=self.uv)

    def counts(self) -> Counts:
        return Counts(pv=self.pv, uv=self.uv)


class _SiteEntry:
    __slots__ = ("record", "pages")

    def __init__(self, record: CounterRecord):
        self.record = record
        self.pages: dict[str, CounterRecord] = dict()


class _Shard:
    __slots__ = ("lock", "sites")

    def __init__(self):
        self.lock = threading.Lock()
        self.sites: dict[str, _SiteEntry] = dict()


class CounterStore:
    def __init__(self, config: Config, generator: FingerprintGenerator | None = None):
        self.config = config
        self.generator = generator if generator is not None else FingerprintGenerator.from_config(config)
        self._shards = [_Shard() for _ in range(config.shards)]

    def _new_record(self, pv: int = 0, uv: int = 0) -> CounterRecord:
        fps = FingerprintSet(self.config.uv_exact_limit, self.config.uv_capacity, self.config.uv_error_rate)
        return CounterRecord(fps, pv, uv)

    def _shard_index(self, site: str) -> int:
        return xxhash.xxh64_intdigest(site.encode("utf-8")) % len(self._shards)

    def _shard(self, site: str) -> _Shard:
        return self._shards[self._shard_index(site)]

    @staticmethod
    def _keys(site: str, page: str | None) -> tuple[str, str | None]:
        return normalize_site(site), (None if page is None else normalize_page(page))

    def _get_or_create(self, site: str, path: str | None) -> CounterRecord:
        shard = self._shard(site)
        with shard.lock:
            entry = shard.sites.get(site)
            if entry is None:
                entry = shard.sites[site] = _SiteEntry(self._new_record())
            if path is None:
                return entry.record
            record = entry.pages.get(path)
            if record is None:
                record = entry.pages[path] = self._new_record()
            return record

    def _lookup(self, site: str, path: str | None) -> CounterRecord | None:
        shard = self._shard(site)
        with shard.lock:
            entry = shard.sites.get(site)
            if entry is None:
                return None
            if path is None:
                return entry.record
            return entry.pages.get(path)

    def _apply(self, site: str, path: str | None, action: Callable[[CounterRecord], Counts]) -> Counts:
        # Retries only when a delete retired the record between lookup and lock
        while True:
            record = self._get_or_create(site, path)
            with record.lock:
                if not record.retired:
                    return action(record)

    ################## Counting #####################

    def record_event(self, site: str, page: str | None, client_address: str, user_agent: str) -> EventCounts:
        """
        Counts one view. The site pv always goes up by one, the page pv too
        when a page is given. Each scope's uv goes up by one if this visitor's
        fingerprint for that scope has not been seen before.
        """
        site, path = self._keys(site, page)
        site_fp = self.generator.fingerprint(client_address, user_agent, site)
        site_counts = self._apply(site, None, lambda r: r.hit(site_fp))
        if path is None:
            return EventCounts(site_pv=site_counts.pv, site_uv=site_counts.uv)
        page_fp = self.generator.fingerprint(client_address, user_agent, site, path)
        page_counts = self._apply(site, path, lambda r: r.hit(page_fp))
        return EventCounts(site_pv=site_counts.pv, site_uv=site_counts.uv,
                           page_pv=page_counts.pv, page_uv=page_counts.uv)

    def submit(self, site: str, page: str | None, client_address: str, user_agent: str) -> None:
        self.record_event(site, page, client_address, user_agent)

    def peek(self, site: str, page: str | None = None) -> Counts:
        """ Read-only. Unknown keys read as zero and are not created. """
        site, path = self._keys(site, page)
        record = self._lookup(site, path)
        if record is None:
            return Counts()
        with record.lock:
            if record.retired:
                return Counts()
            return record.counts()

    ################## Admin #####################

    def update(self, site: str, page: str | None, fn: Callable[[int, int], tuple[int, int]]) -> Counts:
        """
        Replaces a key's (pv, uv) with fn(pv, uv), atomically for that key.
        The key is created if needed. Fingerprint sets are left alone.
        """
        site, path = self._keys(site, page)

        def action(record: CounterRecord) -> Counts:
            pv, uv = fn(record.pv, record.uv)
            check_count("pv", pv)
            check_count("uv", uv)
            record.pv, record.uv = pv, uv
            return record.counts()

        return self._apply(site, path, action)

    def admin_set(self, site: str, page: str | None = None, pv: int | None = None, uv: int | None = None) -> Counts:
        check_count("pv", pv)
        check_count("uv", uv)
        return self.update(site, page, lambda old_pv, old_uv: (
            old_pv if pv is None else pv,
            old_uv if uv is None else uv,
        ))

    def delete(self, site: str, page: str | None = None) -> int:
        """
        Removes a page, or a site together with all of its pages.
        Returns the number of records removed.
        """
        site, path = self._keys(site, page)
        shard = self._shard(site)
        with shard.lock:
            entry = shard.sites.get(site)
            if path is None:
                if entry is None:
                    raise NotFound(f"no such site: {site}")
                del shard.sites[site]
                removed = [entry.record, *entry.pages.values()]
            else:
                if entry is None or path not in entry.pages:
                    raise NotFound(f"no such page: {site}{path}")
                removed = [entry.pages.pop(path)]
            for record in removed:
                with record.lock:
                    record.retired = True
        LOG(f"Deleted {len(removed)} record(s) for {site}{path or ''}")
        return len(removed)

    @staticmethod
    def _retire_all(shard: _Shard):
        # Caller holds shard.lock
        for entry in shard.sites.values():
            for record in (entry.record, *entry.pages.values()):
                with record.lock:
                    record.retired = True

    def reset(self):
        """ Drops every record. """
        for shard in self._shards:
            with shard.lock:
                self._retire_all(shard)
                shard.sites = dict()

    def replace_all(self, sites: Iterable[SiteSnapshot]):
        """
        Installs a full replacement of the store's contents, e.g. what was
        loaded from disk at startup. Fingerprint sets start empty.
        """
        fresh: dict[str, _SiteEntry] = dict()
        for s in sites:
            site = normalize_site(s.site)
            entry = fresh.get(site)
            if entry is None:
                entry = fresh[site] = _SiteEntry(self._new_record(s.pv, s.uv))
            else:
                entry.record.pv, entry.record.uv = s.pv, s.uv
            for p in s.pages:
                entry.pages[normalize_page(p.path)] = self._new_record(p.pv, p.uv)
        by_shard: list[dict[str, _SiteEntry]] = [dict() for _ in self._shards]
        for site, entry in fresh.items():
            by_shard[self._shard_index(site)][site] = entry
        for shard, sites in zip(self._shards, by_shard):
            with shard.lock:
                self._retire_all(shard)
                shard.sites = sites

    ################## Views #####################

    def stats(self) -> StoreStats:
        sites = self.list()
        return StoreStats(
            total_sites=len(sites),
            total_pages=sum(len(s.pages) for s in sites),
            total_site_pv=sum(s.pv for s in sites),
            total_site_uv=sum(s.uv for s in sites),
        )

    def list_sites(self, cursor: int = 0, count: int = 20) -> tuple[list[SiteSnapshot], int]:
        """ A page of sites (without their pages) and the total site count. """
        sites = self.list()
        window = sites[cursor:cursor + count]
        return [SiteSnapshot(site=s.site, pv=s.pv, uv=s.uv) for s in window], len(sites)

    def list_pages(self, site: str, cursor: int = 0, count: int = 50) -> tuple[list[PageSnapshot], int]:
        """ A page of one site's pages, highest pv first, and the site's page count. """
        site = normalize_site(site)
        shard = self._shard(site)
        with shard.lock:
            entry = shard.sites.get(site)
            refs = list(entry.pages.items()) if entry is not None else []
        pages = self._read_pages(refs)
        pages.sort(key=lambda p: (-p.pv, p.path))
        return pages[cursor:cursor + count], len(pages)

    @staticmethod
    def _read_pages(refs: list[tuple[str, CounterRecord]]) -> list[PageSnapshot]:
        pages = []
        for path, record in refs:
            with record.lock:
                if record.retired:
                    continue
                pages.append(PageSnapshot(path=path, pv=record.pv, uv=record.uv))
        return pages

    # Defined last: inside the class body the name shadows the builtin.
    def list(self) -> "list[SiteSnapshot]":
        """
        Every site with its pages, sorted by key.

        Each shard's mapping is copied under its lock, so concurrent creation
        or deletion cannot duplicate or drop entries mid-walk. Each record is
        then read under its own lock: every key is seen as it was at some
        instant during the call, only that key is paused while it is read.
        """
        refs: list[tuple[str, CounterRecord, list[tuple[str, CounterRecord]]]] = []
        for shard in self._shards:
            with shard.lock:
                for site, entry in shard.sites.items():
                    refs.append((site, entry.record, list(entry.pages.items())))

        sites = []
        for site, record, page_refs in refs:
            with record.lock:
                if record.retired:
                    continue
                pv, uv = record.pv, record.uv
            pages = self._read_pages(page_refs)
            pages.sort(key=lambda p: p.path)
            sites.append(SiteSnapshot(site=site, pv=pv, uv=uv, pages=pages))
        sites.sort(key=lambda s: s.site)
        return sites
