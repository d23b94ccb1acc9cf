"""Catalog page layouts for the supported providers."""

from typing import Any, Optional

import httpx

from aggregator.config import settings
from aggregator.ingest.base import PROVIDER_AIRALO, PROVIDER_ESIM_ACCESS, PROVIDER_ESIM_GO
from aggregator.ingest.http_client import PageLayout, ProviderHttpClient


def next_page_from_meta(body: Any, page: int, count: int, page_size: int) -> Optional[str]:
    """Laravel-style ``meta.last_page`` pagination."""
    meta = body.get("meta") or {}
    last_page = meta.get("last_page")
    if last_page is not None:
        return str(page + 1) if page < int(last_page) else None
    return str(page + 1) if count >= page_size else None


def next_page_until_short(body: Any, page: int, count: int, page_size: int) -> Optional[str]:
    """Continue while pages are full, or until ``pageCount`` is reached."""
    page_count = body.get("pageCount") if isinstance(body, dict) else None
    if page_count is not None:
        return str(page + 1) if page < int(page_count) else None
    return str(page + 1) if count > 0 and count >= page_size else None


def single_page(body: Any, page: int, count: int, page_size: int) -> Optional[str]:
    return None


def flatten_airalo(body: Any) -> list[dict]:
    """Flatten countries -> operators -> packages into one dict per package."""
    offers = []
    for country in body.get("data") or []:
        country_code = country.get("country_code") or None
        slug = country.get("slug")
        for operator in country.get("operators") or []:
            coverage = [c.get("country_code") for c in operator.get("countries") or [] if c.get("country_code")]
            for package in operator.get("packages") or []:
                offer = dict(package)
                offer["country_code"] = country_code
                offer["country_slug"] = slug if country_code else None
                offer["region_slug"] = None if country_code else slug
                offer["operator"] = operator.get("title")
                if len(coverage) > 1:
                    offer["coverage"] = coverage
                offers.append(offer)
    return offers


def esim_access_items(body: Any) -> list[dict]:
    return list(((body or {}).get("obj") or {}).get("packageList") or [])


def esim_access_error(body: Any) -> Optional[str]:
    if body.get("success", True):
        return None
    return str(body.get("errorCode") or "error")


def esim_go_items(body: Any) -> list[dict]:
    return list(body.get("bundles") or [])


LAYOUTS: dict[str, PageLayout] = {
    PROVIDER_AIRALO: PageLayout(
        path="/v2/packages",
        native_id_field="id",
        items=flatten_airalo,
        next_token=next_page_from_meta,
    ),
    PROVIDER_ESIM_ACCESS: PageLayout(
        path="/api/v1/open/package/list",
        native_id_field="packageCode",
        items=esim_access_items,
        next_token=single_page,
        method="POST",
        page_param=None,
        page_size_param=None,
        body={"type": "BASE"},
        auth_header="RT-AccessCode",
        auth_scheme=None,
        error_code=esim_access_error,
    ),
    PROVIDER_ESIM_GO: PageLayout(
        path="/v2.4/catalogue",
        native_id_field="name",
        items=esim_go_items,
        next_token=next_page_until_short,
        page_size_param="perPage",
        auth_header="X-API-Key",
        auth_scheme=None,
    ),
}


def build_clients(http: httpx.AsyncClient) -> dict[str, ProviderHttpClient]:
    """One HTTP catalog client per known provider slug."""
    return {
        slug: ProviderHttpClient(layout, http, api_token=settings.provider_api_tokens.get(slug))
        for slug, layout in LAYOUTS.items()
    }
