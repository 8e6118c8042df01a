from enum import Enum
from typing import Any

from pydantic import BaseModel

from models.generic import Count, SiteSnapshot


class MergeMode(str, Enum):
    # pv/uv = max(existing, incoming); never shrinks live counts
    sync = "sync"
    # pv/uv = incoming; restores an exported snapshot exactly
    overwrite = "overwrite"


class ExportDocument(BaseModel):
    """ JSON export of the whole store. Also the accepted import format. """
    sites: list[SiteSnapshot] = list()


class MergeRecord(BaseModel):
    """ One externally sourced count, e.g. a legacy counter's numbers for a page. """
    site: str
    page: str | None = None
    pv: Count
    # None leaves the stored uv alone (legacy page counters often have no UV)
    uv: Count | None = None


class MergeSummary(BaseModel):
    mode: MergeMode
    sites: int = 0
    pages: int = 0
    errors: int = 0


class SyncRequest(BaseModel):
    # Validated one by one so a bad record only fails itself
    records: list[dict[str, Any]]
