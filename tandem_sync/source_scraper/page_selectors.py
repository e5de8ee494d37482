# File: source_scraper/page_selectors.py
from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

from tandem_sync.config import Config

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
VIEWPORT = {"width": 1280, "height": 720}

# Landing / interstitials
COOKIE_KEYWORDS = ("accept", "agree", "cookie")
LOCALE_MARKER = "Select your country"
COUNTRY_TRIGGER = "#country"
LANGUAGE_TRIGGER = "#preferredLanguage"
OPTION = '[role="option"]'
CONTINUE_TEXTS = ("Continue",)

# SSO credential form
LOGIN_PAGE_MARKER = "Account Login"
USERNAME_INPUTS = ('input[name="username"]', 'input[type="email"]', "input#email")
PASSWORD_INPUTS = ('input[name="password"]', 'input[type="password"]', "input#password")
NEXT_TEXTS = ("next",)
SUBMIT_BUTTONS = ('button[type="submit"]',)
SUBMIT_TEXTS = ("sign in", "log in", "login", "submit", "next", "continue")
GENERIC_SUBMIT = ('input[type="submit"]',)

# Report view
DATE_RANGE_TRIGGER = '[aria-labelledby="date-range-label"]'
EXPORT_ELEMENTS = "button, a"
EXPORT_TEXTS = ("Export CSV", "Export")
MODAL_CONTAINERS = 'div[role="dialog"], div.modal, div.modal-content'
MODAL_CONFIRM_TEXTS = ("Export",)

PARTIAL_DOWNLOAD_SUFFIXES = (".crdownload", ".part", ".tmp")


@dataclass(frozen=True)
class SiteProfile:
    """Fixed endpoints and locale preferences for the target portal."""

    base_url: str = "https://source.tandemdiabetes.com"
    sso_host: str = "sso.tandemdiabetes.com"
    report_path: str = "/reports/timeline"
    country_texts: tuple[str, ...] = ("United States", "USA")
    language_texts: tuple[str, ...] = ("English",)

    @property
    def app_url(self) -> str:
        return f"{self.base_url}/"

    @property
    def report_url(self) -> str:
        return f"{self.base_url}{self.report_path}"

    @property
    def origin_host(self) -> str:
        return (urlparse(self.base_url).hostname or "").lower()

    @classmethod
    def from_config(cls, app_config: Config) -> SiteProfile:
        country_texts: tuple[str, ...] = (app_config.target_country,)
        if app_config.target_country.lower() == "united states":
            country_texts = ("United States", "USA")
        return cls(
            base_url=app_config.tandem_base_url,
            sso_host=app_config.tandem_sso_host,
            country_texts=country_texts,
            language_texts=(app_config.target_language,),
        )
