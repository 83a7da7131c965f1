"""
sources/scrape.py — Fallback adapter: the authenticated CNC survey site.

Each indicator has its own site (settings.site_url_<indicator>). After
logging in, the search form is filtered by year, month and region, and the
result table rendered inside the ``#dadosPesquisa`` iframe is read.

The table lists one row per period, labelled "JUL 25", followed by the
indicator's headline values. The adapter returns every row of the table;
picking the requested period is the normalizer's job.

Selenium is synchronous, so every browser call runs in a worker thread and
an asyncio.Lock keeps a single driver from being used by two tuples at
once, even when a fetch times out while its thread is still driving the
browser; such a session is quit, never reused. The browser is started
lazily on first use and closed with the adapter.

Usage:
    async with ScrapeSource() as source:
        payload = await source.fetch(Indicator.ICF, "BR", Period(2024, 7))
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol, TypeVar

import polars as pl
from bs4 import BeautifulSoup
from selenium import webdriver
from selenium.common.exceptions import (
    NoSuchElementException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import Select, WebDriverWait

from cnc_pipeline.errors import (
    ConfigurationError,
    ShapeUnrecognized,
    TransientNetworkError,
)
from cnc_pipeline.sources.base import BaseSource
from cnc_shared.config import settings
from cnc_shared.constants import Indicator, Method
from cnc_shared.time_utils import Period

T = TypeVar("T")


class BrowserSession(Protocol):
    """The browser capability the scrape adapter needs."""

    def login(self, url: str, user: str, password: str) -> None: ...

    def table_html(self, period: Period, region: str) -> str: ...

    def quit(self) -> None: ...


def parse_table_html(html: str) -> list[list[str | None]]:
    """
    Flatten the first <table> of *html* into rows of cell text.

    Header (<th>) and data (<td>) cells are kept in document order; blank
    cells become None and rows with no text at all are dropped.
    """
    soup = BeautifulSoup(html, "html.parser")
    table = soup.find("table")
    if table is None:
        return []

    rows: list[list[str | None]] = []
    for tr in table.find_all("tr"):
        cells = [
            cell.get_text(" ", strip=True) or None
            for cell in tr.find_all(["th", "td"])
        ]
        if any(cells):
            rows.append(cells)
    return rows


# ---------------------------------------------------------------------------
# Selenium implementation
# ---------------------------------------------------------------------------


class SeleniumSession:
    """Headless Chrome driving the survey site's login and search form."""

    def __init__(self, *, timeout: float | None = None, headless: bool | None = None) -> None:
        self._timeout = timeout or settings.browser_timeout
        options = ChromeOptions()
        if settings.browser_headless if headless is None else headless:
            options.add_argument("--headless=new")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        try:
            self._driver = webdriver.Chrome(options=options)
        except WebDriverException as exc:
            raise TransientNetworkError(f"Could not start the browser: {exc.msg}") from exc
        self._driver.set_page_load_timeout(self._timeout * 3)
        self._wait = WebDriverWait(self._driver, self._timeout)

    def login(self, url: str, user: str, password: str) -> None:
        driver = self._driver
        try:
            driver.get(url)
            self._wait.until(EC.presence_of_element_located((By.ID, "log")))
            driver.find_element(By.ID, "log").send_keys(user)
            driver.find_element(By.ID, "pwd").send_keys(password)
            driver.find_element(By.ID, "actionLogin").click()
            self._wait.until(EC.presence_of_element_located((By.ID, "formPesquisa")))
        except TimeoutException as exc:
            raise TransientNetworkError(f"Login to {url} did not complete") from exc
        except WebDriverException as exc:
            raise TransientNetworkError(f"Browser error during login: {exc.msg}") from exc

    def table_html(self, period: Period, region: str) -> str:
        driver = self._driver
        try:
            driver.switch_to.default_content()
            self._wait.until(EC.presence_of_element_located((By.ID, "formPesquisa")))
            Select(driver.find_element(By.ID, "selectAno")).select_by_value(str(period.year))
            Select(driver.find_element(By.ID, "selectMes")).select_by_value(str(period.month))
            Select(driver.find_element(By.ID, "selectEstado")).select_by_value(region)
            driver.find_element(By.XPATH, "//button[normalize-space()='Filtrar']").click()

            self._wait.until(
                EC.frame_to_be_available_and_switch_to_it((By.ID, "dadosPesquisa"))
            )
            self._wait.until(EC.presence_of_element_located((By.TAG_NAME, "table")))
            self._wait.until(
                lambda d: period.scrape_label in d.find_element(By.TAG_NAME, "table").text
            )
            return driver.find_element(By.TAG_NAME, "table").get_attribute("outerHTML") or ""
        except NoSuchElementException as exc:
            raise ShapeUnrecognized(f"Search form element missing: {exc.msg}") from exc
        except TimeoutException as exc:
            raise TransientNetworkError(
                f"Result table for {region} {period.label} did not render"
            ) from exc
        except WebDriverException as exc:
            raise TransientNetworkError(f"Browser error while filtering: {exc.msg}") from exc
        finally:
            driver.switch_to.default_content()

    def quit(self) -> None:
        self._driver.quit()


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ScrapeSource(BaseSource):
    """Reads the rendered result table from the authenticated survey site."""

    name = "cnc_site"
    method = Method.SCRAPE

    def __init__(
        self,
        *,
        session_factory: Callable[[], BrowserSession] | None = None,
        user: str | None = None,
        password: str | None = None,
    ) -> None:
        super().__init__()
        self._session_factory = session_factory or SeleniumSession
        self._user = settings.credentials_user if user is None else user
        self._password = settings.credentials_password if password is None else password
        # One logged-in session per indicator site
        self._sessions: dict[Indicator, BrowserSession] = {}
        self._browser_lock = asyncio.Lock()

    def source_url(self, indicator: Indicator, region: str, period: Period) -> str:
        return settings.site_url_for(indicator)

    async def close(self) -> None:
        async with self._browser_lock:
            for indicator in list(self._sessions):
                await self._discard(indicator)

    async def _discard(self, indicator: Indicator) -> None:
        session = self._sessions.pop(indicator, None)
        if session is not None:
            await asyncio.to_thread(session.quit)
            self._log.debug("browser_session_closed", indicator=indicator.value)

    async def _in_browser(self, session: BrowserSession, fn: Callable[..., T], *args) -> T:
        """
        Run a blocking browser call in a worker thread.

        Cancelling the caller does not stop the thread, so the caller keeps
        the browser lock until the call has returned and the session is quit.
        """
        call = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(call)
        except asyncio.CancelledError:
            await self._quit_after(session, call)
            raise

    async def _quit_after(self, session: BrowserSession, call: asyncio.Future) -> None:
        for indicator, cached in list(self._sessions.items()):
            if cached is session:
                del self._sessions[indicator]
        await asyncio.wait({call})
        if not call.cancelled() and call.exception() is not None:
            self._log.debug("abandoned_browser_call_failed", error=str(call.exception()))
        await asyncio.to_thread(session.quit)
        self._log.warning("browser_session_abandoned")

    async def _session_for(self, indicator: Indicator) -> BrowserSession:
        session = self._sessions.get(indicator)
        if session is not None:
            return session

        if not self._user or not self._password:
            raise ConfigurationError(
                "CREDENTIALS_USER and CREDENTIALS_PASSWORD must be set to scrape the survey site"
            )

        session = await asyncio.to_thread(self._session_factory)
        try:
            await self._in_browser(
                session, session.login, settings.site_url_for(indicator), self._user, self._password
            )
        except Exception:
            await asyncio.to_thread(session.quit)
            raise

        self._sessions[indicator] = session
        self._log.info("browser_session_opened", indicator=indicator.value)
        return session

    async def extract(
        self, indicator: Indicator, region: str, period: Period
    ) -> pl.DataFrame:
        self._check_published(indicator, period)

        async with self._browser_lock:
            session = await self._session_for(indicator)
            try:
                html = await self._in_browser(session, session.table_html, period, region)
            except TransientNetworkError:
                # a hung or crashed browser is not reused by the next tuple
                await self._discard(indicator)
                raise

        rows = parse_table_html(html)
        if not rows:
            raise ShapeUnrecognized(f"No result table for {region} {period.label}")

        self._log.debug("scrape_table_read", region=region, period=period.label, rows=len(rows))
        return self.rows_to_frame(rows)
