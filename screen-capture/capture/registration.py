"""
Job registration: turns a capture request for a URL into MonitoredPage records
and CaptureJobs, one per viewport class.
"""

import uuid
from typing import Iterable, List, Optional
from urllib.parse import urlparse

import tldextract

from capture.core import logger
from capture.models import CaptureJob, ViewportClass
from storage.store import CaptureStore

# Bundled public suffix snapshot only; registration never touches the network.
_extract = tldextract.TLDExtract(suffix_list_urls=())

DEFAULT_VIEWPORTS = (ViewportClass.DESKTOP, ViewportClass.MOBILE)


def site_domain(url: str) -> str:
    """
    Registered domain of a URL (www.apple.com -> apple.com, shop.example.co.uk -> example.co.uk).
    Hosts without a public suffix (localhost, IPs) are used as-is.
    """
    ext = _extract(url)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}".lower()
    host = (urlparse(url).hostname or "").lower()
    if not host:
        raise ValueError(f"URL has no host: {url!r}")
    return host


def register_capture(
    store: CaptureStore,
    url: str,
    viewports: Iterable[ViewportClass] = DEFAULT_VIEWPORTS,
    with_content: bool = False,
    priority: int = 5,
    site_name: Optional[str] = None,
) -> List[CaptureJob]:
    """
    Upsert one MonitoredPage per viewport and build its CaptureJob.
    New targets start at version 1; re-submitted targets get version + 1 and
    status PENDING.
    """
    domain = site_domain(url)
    site = store.get_or_create_site(domain, site_name)

    jobs = []
    for viewport in dict.fromkeys(viewports):
        page = store.upsert_page(site.site_id, url, viewport)
        job = CaptureJob.for_page(page, with_content=with_content, priority=priority,
                                  job_id=str(uuid.uuid4()))
        logger.info(
            f"[REGISTER] {url} ({viewport.value}) page={page.page_id} version={page.version}",
            extra={"context": f"site-{site.domain}"},
        )
        jobs.append(job)
    return jobs
