from typing import Iterable

from pydantic import ValidationError

from counters import CounterStore, check_count
from errors import CounterError, InvalidMerge
from models.export import ExportDocument, MergeMode, MergeRecord, MergeSummary
from models.generic import Counts
from utils import LOG, normalize_page, normalize_site


def as_mode(mode) -> MergeMode:
    # Never inferred: callers must name the mode
    if isinstance(mode, MergeMode):
        return mode
    try:
        return MergeMode(mode)
    except ValueError:
        raise InvalidMerge(f"merge mode must be one of {[m.value for m in MergeMode]}, got {mode!r}")


class MergeEngine:
    """
    Folds externally sourced counts into the store.

    sync:      pv, uv = max(existing, incoming). Repeating a merge is a no-op
               and stale external data never lowers live counts.
    overwrite: pv, uv = incoming. Used to restore an export exactly.

    Merged uv has no fingerprints behind it, so later organic visits are
    deduplicated only against visitors seen by this process.
    """

    def __init__(self, store: CounterStore):
        self.store = store

    def merge(self, record: MergeRecord, mode: MergeMode) -> Counts:
        mode = as_mode(mode)
        check_count("pv", record.pv)
        check_count("uv", record.uv)
        pv, uv = record.pv, record.uv

        if mode is MergeMode.sync:
            def combine(old_pv: int, old_uv: int) -> tuple[int, int]:
                return max(old_pv, pv), old_uv if uv is None else max(old_uv, uv)
        else:
            def combine(old_pv: int, old_uv: int) -> tuple[int, int]:
                return pv, old_uv if uv is None else uv

        return self.store.update(record.site, record.page, combine)

    def import_document(self, document: ExportDocument, mode: MergeMode) -> MergeSummary:
        """ Applies every site and page of an export document. """
        mode = as_mode(mode)
        # Reject bad keys before anything is applied
        for s in document.sites:
            normalize_site(s.site)
            for p in s.pages:
                normalize_page(p.path)

        summary = MergeSummary(mode=mode)
        for s in document.sites:
            self.merge(MergeRecord(site=s.site, pv=s.pv, uv=s.uv), mode)
            summary.sites += 1
            for p in s.pages:
                self.merge(MergeRecord(site=s.site, page=p.path, pv=p.pv, uv=p.uv), mode)
                summary.pages += 1
        LOG(f"Imported {summary.sites} sites, {summary.pages} pages ({mode.value})")
        return summary

    def sync(self, records: Iterable[MergeRecord | dict]) -> MergeSummary:
        """
        Legacy sync: one record at a time, always in sync mode. A bad record
        is counted in `errors` and skipped; the rest still apply.
        """
        summary = MergeSummary(mode=MergeMode.sync)
        for raw in records:
            try:
                record = raw if isinstance(raw, MergeRecord) else MergeRecord.model_validate(raw)
                self.merge(record, MergeMode.sync)
            except (ValidationError, CounterError) as e:
                LOG("Skipping legacy record:", e)
                summary.errors += 1
                continue
            if record.page is None:
                summary.sites += 1
            else:
                summary.pages += 1
        return summary

    @staticmethod
    def export_document(store: CounterStore) -> ExportDocument:
        return ExportDocument(sites=store.list())
