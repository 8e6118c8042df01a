from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

U64_MAX = 2 ** 64 - 1

# Unsigned 64-bit counter value
Count = Annotated[int, Field(ge=0, le=U64_MAX)]


class Counts(BaseModel):
    """ Point-in-time copy of one key's counters. """
    model_config = ConfigDict(frozen=True)

    pv: int = 0
    uv: int = 0


class EventCounts(BaseModel):
    site_pv: int
    site_uv: int
    # Absent when the event had no page
    page_pv: int | None = None
    page_uv: int | None = None


class PageSnapshot(BaseModel):
    path: str
    pv: Count
    uv: Count

    @staticmethod
    def from_tuple(tup):
        path, pv, uv = tup
        return PageSnapshot(path=path, pv=pv, uv=uv)


class SiteSnapshot(BaseModel):
    site: str
    pv: Count
    uv: Count
    pages: list[PageSnapshot] = list()


class StoreStats(BaseModel):
    total_sites: int
    total_pages: int
    total_site_pv: int
    total_site_uv: int
