# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "rich",
# ]
# ///
"""CrUX Core Web Vitals Extractor.

Queries the Chrome UX Report API for a list of URL / form-factor pairs,
flattens each record into a fixed 19-column row (LCP, FID, CLS, FCP
histograms + p75) and appends the rows to a spreadsheet-like workbook,
together with a per-request execution history.
"""

from __future__ import annotations

import argparse
import json
import os
import random
import sys
import time
import tomllib
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd
import requests
from rich.console import Console
from rich.table import Table

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CRUX_URL = "https://chromeuxreport.googleapis.com/v1/records:queryRecord?alt=json"

VALID_FORM_FACTORS = ("PHONE", "DESKTOP", "ALL_FORM_FACTORS")
AGGREGATED_FORM_FACTOR = "AGGREGATED"

DEFAULT_FORM_FACTORS = list(VALID_FORM_FACTORS)
DEFAULT_SHEET_TAB_NAME = "cruxData"
DEFAULT_DELAY = 0.4
DEFAULT_TIMEOUT = 60.0
DEFAULT_HISTORY_LIMIT = 20

HISTORY_SHEET_TAB_NAME = "executionHistory"

HTTP_STATUS_OK = 200
ERROR_DETAIL_LIMIT = 500

HEADER_ROW = 1
MAX_SHEET_COLUMNS = 64

MISSING_VALUE = "-"
DATE_FORMAT = "%d-%m-%Y"
TIMESTAMP_FORMAT = "%d-%m-%Y %H:%M:%S"
EXECUTION_ID_PREFIX = "exec_"

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"
STATUS_UNKNOWN = "UNKNOWN"
NORMALIZED_YES = "YES"
NORMALIZED_NO = "NO"

CONFIG_FILENAMES = ["crux.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "crux",
]
API_KEY_ENV_VAR = "CRUX_API_KEY"

# Row layout: (column label, candidate API metric names). The first name
# present in the record wins; FID falls back to INP since the API retired FID.
TRACKED_METRICS = [
    ("LCP", ("largest_contentful_paint",)),
    ("FID", ("first_input_delay", "interaction_to_next_paint")),
    ("CLS", ("cumulative_layout_shift",)),
    ("FCP", ("first_contentful_paint",)),
]

HISTOGRAM_BUCKETS = ("Good", "Needs Improvement", "Poor")

DATA_HEADER = [
    "Date",
    "Platform",
    "URL",
    "LCP (Good)",
    "LCP (Needs Improvement)",
    "LCP (Poor)",
    "LCP (75th Percentile)",
    "FID (Good)",
    "FID (Needs Improvement)",
    "FID (Poor)",
    "FID (75th Percentile)",
    "CLS (Good)",
    "CLS (Needs Improvement)",
    "CLS (Poor)",
    "CLS (75th Percentile)",
    "FCP (Good)",
    "FCP (Needs Improvement)",
    "FCP (Poor)",
    "FCP (75th Percentile)",
]

HISTORY_HEADER = [
    "Execution ID",
    "Timestamp",
    "URL",
    "Form Factor",
    "Status",
    "Response Code",
    "Error Message",
    "Normalized",
]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CruxExtractorError(Exception):
    """Base class for every error raised by the extractor."""


class ConfigurationError(CruxExtractorError):
    """Raised when required configuration is missing or invalid."""


class SequenceError(CruxExtractorError):
    """Raised when a pipeline stage runs before its prerequisite stage."""


class TransportError(CruxExtractorError):
    """Raised when a single API request fails at the network level."""


class HttpStatusError(CruxExtractorError):
    """Raised when the API answers a single request with a non-200 status."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")


class ParseError(CruxExtractorError):
    """Raised when a 200 response body is not a JSON object."""


class NoSuccessfulResponsesError(CruxExtractorError):
    """Raised when every request in the batch failed."""


class AllNormalizationFailedError(CruxExtractorError):
    """Raised when no fetched payload could be normalized."""


# ---------------------------------------------------------------------------
# Data Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestDescriptor:
    """One (url, formFactor) query against the CrUX API."""

    url: str
    form_factor: str

    @property
    def payload(self) -> dict:
        return {"url": self.url, "formFactor": self.form_factor}

    def to_json(self) -> str:
        return json.dumps(self.payload)


@dataclass
class ExecutionRecord:
    """Audit entry for a single request. Optional fields default on write."""

    url: str
    form_factor: str
    status: str | None = None
    response_code: int | str | None = None
    error_message: str | None = None
    normalized: str | None = None
    execution_id: str | None = None
    timestamp: str | None = None


@dataclass(frozen=True)
class ExecutionSummary:
    execution_id: str
    total_requests: int
    successful_responses: int
    rows_written: int
    failed_requests: int

    def to_dict(self) -> dict:
        return {
            "executionId": self.execution_id,
            "totalRequests": self.total_requests,
            "successfulResponses": self.successful_responses,
            "rowsWritten": self.rows_written,
            "failedRequests": self.failed_requests,
        }


@dataclass
class RunState:
    """Guards against running the extraction twice with the same state.

    ``started`` is set when a run begins and is never reset.
    """

    started: bool = False


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"malformed config file {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"cannot read config file {config_path}: {exc}") from exc


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            raise ConfigurationError(f"profile '{profile_name}' not found in config. Available: {available}")
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "spreadsheet_id": "spreadsheet_id",
        "sheet_tab_name": "sheet_tab_name",
        "urls": "config_urls",
        "urls_file": "file",
        "form_factors": "form_factors",
        "delay": "delay",
        "timeout": "timeout",
        "crux_url": "crux_url",
        "timezone": "time_zone",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", [])) | set(getattr(args, "_explicit_global_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get(API_KEY_ENV_VAR)
        if env_key:
            args.api_key = env_key

    return args


def settings_from_args(args: argparse.Namespace) -> dict:
    """Collect the keyword arguments for build_extractor() from resolved args."""
    urls = load_urls(
        getattr(args, "urls", []) or getattr(args, "config_urls", None) or [],
        getattr(args, "file", None),
    )
    return {
        "urls": urls,
        "spreadsheet_id": getattr(args, "spreadsheet_id", None),
        "api_key": getattr(args, "api_key", None),
        "form_factors": getattr(args, "form_factors", DEFAULT_FORM_FACTORS),
        "crux_url": getattr(args, "crux_url", DEFAULT_CRUX_URL),
        "sheet_tab_name": getattr(args, "sheet_tab_name", DEFAULT_SHEET_TAB_NAME),
        "delay": getattr(args, "delay", DEFAULT_DELAY),
        "timeout": getattr(args, "timeout", DEFAULT_TIMEOUT),
        "time_zone": getattr(args, "time_zone", None),
        "verbose": getattr(args, "verbose", False),
    }


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


def _track_explicit(namespace: argparse.Namespace, attr: str, dest: str) -> None:
    explicit = getattr(namespace, attr, [])
    explicit.append(dest)
    setattr(namespace, attr, explicit)


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    tracking_attr = "_explicit_args"

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        _track_explicit(namespace, self.tracking_attr, self.dest)


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    tracking_attr = "_explicit_args"

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        _track_explicit(namespace, self.tracking_attr, self.dest)


# A subcommand's namespace is copied over the parent's after parsing, so
# flags given before the subcommand keep their own list.
class GlobalTrackingAction(TrackingAction):
    tracking_attr = "_explicit_global_args"


class GlobalTrackingStoreTrueAction(TrackingStoreTrueAction):
    tracking_attr = "_explicit_global_args"


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="crux-extract",
        description="CrUX Core Web Vitals Extractor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=GlobalTrackingAction, default=None, help=f"CrUX API key (or set {API_KEY_ENV_VAR} env var)")
    parser.add_argument("-c", "--config", dest="config", action=GlobalTrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=GlobalTrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=GlobalTrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Extract metrics and append them to the workbook")
    run_parser.add_argument("urls", nargs="*", default=[], help="URLs to extract (overrides config urls)")
    run_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one URL per line")
    run_parser.add_argument("--spreadsheet-id", dest="spreadsheet_id", action=TrackingAction, default=None, help="Workbook directory the tabs are written to")
    run_parser.add_argument("--sheet-tab", dest="sheet_tab_name", action=TrackingAction, default=DEFAULT_SHEET_TAB_NAME, help="Data tab name (default: cruxData)")
    run_parser.add_argument("--form-factor", dest="form_factors", action=TrackingAction, nargs="+", default=DEFAULT_FORM_FACTORS, help="Form factors: PHONE, DESKTOP, ALL_FORM_FACTORS")
    run_parser.add_argument("-d", "--delay", dest="delay", action=TrackingAction, type=float, default=DEFAULT_DELAY, help="Seconds between API requests")
    run_parser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=float, default=DEFAULT_TIMEOUT, help="Per-request timeout in seconds")
    run_parser.add_argument("--endpoint", dest="crux_url", action=TrackingAction, default=DEFAULT_CRUX_URL, help="CrUX queryRecord endpoint")
    run_parser.add_argument("--timezone", dest="time_zone", action=TrackingAction, default=None, help="IANA time zone for row dates (default: local)")
    run_parser.set_defaults(config_urls=None)

    # --- check ---
    check_parser = subparsers.add_parser("check", help="Fetch one URL and print its normalized row")
    check_parser.add_argument("url", help="URL to check")
    check_parser.add_argument("--form-factor", dest="form_factor", default="PHONE", choices=VALID_FORM_FACTORS, help="Form factor (default: PHONE)")
    check_parser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=float, default=DEFAULT_TIMEOUT, help="Request timeout in seconds")
    check_parser.add_argument("--endpoint", dest="crux_url", action=TrackingAction, default=DEFAULT_CRUX_URL, help="CrUX queryRecord endpoint")
    check_parser.add_argument("--timezone", dest="time_zone", action=TrackingAction, default=None, help="IANA time zone for the row date")

    # --- history ---
    history_parser = subparsers.add_parser("history", help="Show recent execution history entries")
    history_parser.add_argument("--spreadsheet-id", dest="spreadsheet_id", action=TrackingAction, default=None, help="Workbook directory to read")
    history_parser.add_argument("-n", "--limit", dest="limit", type=int, default=DEFAULT_HISTORY_LIMIT, help="Number of most recent entries (default: 20)")

    return parser


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def is_valid_url(url: object) -> bool:
    """Return True only for absolute http/https URLs with a well-formed host."""
    if not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
        parsed.port  # raises ValueError for a non-numeric or out-of-range port
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not hostname:
        return False
    return not any(ch.isspace() or not ch.isprintable() for ch in parsed.netloc)


def load_urls(url_args: list[str], file_path: str | None) -> list[str]:
    """Collect raw URLs from args, or from a file with one URL per line.

    Blank lines and ``#`` comments are dropped; validation happens when
    the request plan is built.
    """
    if not isinstance(url_args, list):
        raise ConfigurationError("'urls' must be a non-empty list")

    raw_urls: list[str] = []

    if url_args:
        raw_urls.extend(url_args)
    elif file_path:
        path = Path(file_path)
        if not path.is_file():
            raise ConfigurationError(f"URL file not found: {file_path}")
        raw_urls.extend(path.read_text().splitlines())

    urls = []
    for raw in raw_urls:
        if not isinstance(raw, str):
            urls.append(raw)
            continue
        cleaned = raw.strip()
        if cleaned and not cleaned.startswith("#"):
            urls.append(cleaned)
    return urls


# ---------------------------------------------------------------------------
# Table Store
# ---------------------------------------------------------------------------


class CsvSheet:
    """A single workbook tab stored as a header-less CSV grid.

    Rows are 1-based like a spreadsheet; every cell round-trips as text.
    """

    def __init__(self, path: Path, name: str):
        self.path = path
        self.name = name

    def get_values(self) -> list[list[str]]:
        if not self.path.is_file():
            return []
        try:
            frame = pd.read_csv(
                self.path,
                header=None,
                names=list(range(MAX_SHEET_COLUMNS)),
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
            )
        except pd.errors.EmptyDataError:
            return []
        frame = frame.fillna("")
        populated = [index for index, column in enumerate(frame.columns) if (frame[column] != "").any()]
        if not populated:
            return []
        return frame.iloc[:, : populated[-1] + 1].values.tolist()

    def get_last_row(self) -> int:
        return len(self.get_values())

    def set_values(self, row: int, values: list[list]) -> None:
        """Write ``values`` starting at 1-based ``row``, appending when past the end."""
        if not values:
            return
        last_row = self.get_last_row()
        if row < HEADER_ROW or row > last_row + 1:
            raise ValueError(f"row {row} is outside sheet '{self.name}' (last row {last_row})")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if row == last_row + 1:
            pd.DataFrame(values).to_csv(self.path, mode="a", header=False, index=False)
            return

        grid = self.get_values()
        start = row - 1
        for offset, new_row in enumerate(values):
            if start + offset < len(grid):
                grid[start + offset] = list(new_row)
            else:
                grid.append(list(new_row))
        pd.DataFrame(grid).to_csv(self.path, header=False, index=False)


class CsvWorkbook:
    """Spreadsheet-like store: one directory, one CSV file per tab."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _sheet_path(self, name: str) -> Path:
        return self.directory / f"{name}.csv"

    def sheet_names(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(path.stem for path in self.directory.glob("*.csv"))

    def get_sheet(self, name: str) -> CsvSheet | None:
        path = self._sheet_path(name)
        return CsvSheet(path, name) if path.is_file() else None

    def insert_sheet(self, name: str) -> CsvSheet:
        path = self._sheet_path(name)
        if path.exists():
            raise ValueError(f"sheet '{name}' already exists in {self.directory}")
        self.directory.mkdir(parents=True, exist_ok=True)
        path.touch()
        return CsvSheet(path, name)


def read_sheet_frame(sheet: CsvSheet) -> pd.DataFrame:
    """Load a tab into a DataFrame, using its first row as the header."""
    values = sheet.get_values()
    if not values:
        return pd.DataFrame()
    header = _trim_row(values[0])
    rows = [row[: len(header)] for row in values[1:]]
    return pd.DataFrame(rows, columns=header)


def _trim_row(row: list) -> list:
    """Drop trailing empty cells."""
    trimmed = list(row)
    while trimmed and trimmed[-1] in ("", None):
        trimmed.pop()
    return trimmed


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def fetch_crux_record(
    descriptor: RequestDescriptor,
    crux_url: str,
    api_key: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict:
    """POST one queryRecord request and return the parsed JSON body.

    Raises TransportError, HttpStatusError or ParseError; no retries.
    """
    try:
        response = requests.post(
            crux_url,
            params={"key": api_key},
            json=descriptor.payload,
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise TransportError(f"request failed for {descriptor.url} ({descriptor.form_factor}): {exc}") from exc

    if response.status_code != HTTP_STATUS_OK:
        error_detail = ""
        try:
            error_body = response.json()
            error_detail = error_body.get("error", {}).get("message", "")
        except (ValueError, AttributeError):
            pass
        if not error_detail:
            error_detail = " ".join(response.text.split())[:ERROR_DETAIL_LIMIT]
        raise HttpStatusError(response.status_code, error_detail)

    try:
        body = response.json()
    except ValueError as exc:
        raise ParseError(f"invalid JSON for {descriptor.url} ({descriptor.form_factor}): {exc}") from exc
    if not isinstance(body, dict):
        raise ParseError(f"expected a JSON object for {descriptor.url} ({descriptor.form_factor}), got {type(body).__name__}")
    return body


# ---------------------------------------------------------------------------
# Metrics Extraction
# ---------------------------------------------------------------------------


def _dig(data: object, *path: str, default: object = MISSING_VALUE) -> object:
    """Walk nested dicts; return ``default`` when any step is missing or None."""
    current = data
    for key in path:
        if not isinstance(current, dict):
            return default
        current = current.get(key)
        if current is None:
            return default
    return current


def extract_metric(metrics: dict, metric_name: str) -> tuple:
    """Return (good, needs_improvement, poor, p75) for one metric.

    Each of the four values defaults to "-" independently, so a record with
    a histogram but no percentiles still yields its three densities.
    """
    histogram = _dig(metrics, metric_name, "histogram", default=None)
    if not isinstance(histogram, list):
        histogram = []

    densities = []
    for bucket_index in range(len(HISTOGRAM_BUCKETS)):
        bucket = histogram[bucket_index] if bucket_index < len(histogram) else None
        densities.append(_dig(bucket, "density"))

    p75 = _dig(metrics, metric_name, "percentiles", "p75")
    return (*densities, p75)


def normalize_record(payload: object, date_label: str) -> list | None:
    """Flatten one CrUX response into a 19-cell row.

    Returns None when the payload lacks ``record.key`` or ``record.metrics``.
    """
    key = _dig(payload, "record", "key", default=None)
    metrics = _dig(payload, "record", "metrics", default=None)
    if not isinstance(key, dict) or not isinstance(metrics, dict):
        return None

    form_factor = key.get("formFactor") or AGGREGATED_FORM_FACTOR
    url = _dig(key, "url")

    row = [date_label, form_factor, url]
    for _, api_names in TRACKED_METRICS:
        metric_name = next((name for name in api_names if name in metrics), api_names[0])
        row.extend(extract_metric(metrics, metric_name))
    return row


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def current_time(time_zone: str | None = None) -> datetime:
    """Now, in the given IANA zone or the process's local zone."""
    if time_zone:
        return datetime.now(ZoneInfo(time_zone))
    return datetime.now().astimezone()


def generate_execution_id() -> str:
    return f"{EXECUTION_ID_PREFIX}{int(time.time() * 1000)}_{random.randint(0, 999999)}"


def _require_text(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"'{name}' must be a non-empty string")
    return value.strip()


def _require_non_negative(value: object, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigurationError(f"'{name}' must be a non-negative number")
    return float(value)


def _require_positive(value: object, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"'{name}' must be a positive number")
    return float(value)


def _require_time_zone(time_zone: str | None) -> str | None:
    if not time_zone:
        return None
    try:
        ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"unknown time zone: {time_zone}") from exc
    return time_zone


class CruxExtractor:
    """Plan, fetch, normalize and write CrUX records for one workbook.

    Stages must run in order: build_request_urls() -> fetch_data() ->
    normalize_data() -> add_to_spreadsheet(). run() drives all of them and
    flushes the execution history whether or not the run succeeds.
    """

    def __init__(
        self,
        urls: list[str],
        spreadsheet_id: str,
        api_key: str,
        form_factors: list[str] | None = None,
        crux_url: str = DEFAULT_CRUX_URL,
        sheet_tab_name: str = DEFAULT_SHEET_TAB_NAME,
        delay: float = DEFAULT_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        time_zone: str | None = None,
        store: CsvWorkbook | None = None,
        verbose: bool = False,
    ):
        if not isinstance(urls, list) or not urls:
            raise ConfigurationError("'urls' must be a non-empty list")
        if not all(isinstance(url, str) and url.strip() for url in urls):
            raise ConfigurationError("All URLs must be non-empty strings")
        if form_factors is None:
            form_factors = DEFAULT_FORM_FACTORS
        if not isinstance(form_factors, list) or not form_factors:
            raise ConfigurationError("'formFactor' must be a non-empty list")

        self.urls = [url.strip() for url in urls]
        self.spreadsheet_id = _require_text(spreadsheet_id, "spreadsheetId")
        self.api_key = _require_text(api_key, "apiKey")
        self.crux_url = _require_text(crux_url, "cruxUrl")
        self.sheet_tab_name = _require_text(sheet_tab_name, "sheetTabName")
        self.form_factors = [ff.strip() if isinstance(ff, str) else ff for ff in form_factors]
        self.delay = _require_non_negative(delay, "delay")
        self.timeout = _require_positive(timeout, "timeout")
        self.time_zone = _require_time_zone(time_zone)

        self.store = store if store is not None else CsvWorkbook(self.spreadsheet_id)
        self.verbose = verbose

        self.execution_id: str | None = None
        self.state: str | None = None
        self.requests: list[RequestDescriptor] | None = None
        self.filtered_response: list[dict] | None = None
        self.normalized_response: list[list] | None = None
        self.execution_records: list[ExecutionRecord] = []

    # --- Stage 1: request planning ---

    def build_request_urls(self) -> list[RequestDescriptor]:
        """Build the URL-major cross-product of valid URLs and form factors."""
        accepted_form_factors = []
        for form_factor in self.form_factors:
            if form_factor in VALID_FORM_FACTORS:
                accepted_form_factors.append(form_factor)
            else:
                print(f"Warning: skipping invalid form factor: {form_factor}", file=sys.stderr)

        self.requests = []
        for url in self.urls:
            if not is_valid_url(url):
                print(f"Warning: skipping invalid URL: {url}", file=sys.stderr)
                continue
            for form_factor in accepted_form_factors:
                self.requests.append(RequestDescriptor(url=url, form_factor=form_factor))

        if not self.requests:
            raise ConfigurationError("Planning stage: No valid URL/form factor combinations to request")

        if self.verbose:
            print(f"  Planned {len(self.requests)} request(s)", file=sys.stderr)
        return self.requests

    # --- Stage 2: fetching ---

    def fetch_data(self) -> list[dict]:
        """Issue every planned request in order and keep the parsed payloads.

        Per-request failures are recorded in execution_records and do not
        stop the batch.
        """
        if self.requests is None:
            raise SequenceError("Fetch stage: Call build_request_urls() first")
        if self.execution_id is None:
            self.execution_id = generate_execution_id()

        self.filtered_response = []
        self.execution_records = []
        total_requests = len(self.requests)

        for request_index, descriptor in enumerate(self.requests):
            if self.verbose:
                print(f"  Fetching {descriptor.url} ({descriptor.form_factor}) [{request_index + 1}/{total_requests}]...", file=sys.stderr)

            record = ExecutionRecord(
                url=descriptor.url,
                form_factor=descriptor.form_factor,
                normalized=NORMALIZED_NO,
                execution_id=self.execution_id,
                timestamp=current_time(self.time_zone).strftime(TIMESTAMP_FORMAT),
            )
            try:
                payload = fetch_crux_record(descriptor, self.crux_url, self.api_key, self.timeout)
            except TransportError as exc:
                record.status = STATUS_FAILED
                record.response_code = MISSING_VALUE
                record.error_message = str(exc)
                print(f"  Error: {exc}", file=sys.stderr)
            except HttpStatusError as exc:
                record.status = STATUS_FAILED
                record.response_code = exc.status_code
                record.error_message = exc.detail
                print(f"  Error: {exc} for {descriptor.url} ({descriptor.form_factor})", file=sys.stderr)
            except ParseError as exc:
                record.status = STATUS_FAILED
                record.response_code = HTTP_STATUS_OK
                record.error_message = str(exc)
                print(f"  Error: {exc}", file=sys.stderr)
            else:
                record.status = STATUS_SUCCESS
                record.response_code = HTTP_STATUS_OK
                self.filtered_response.append(payload)
            self.execution_records.append(record)

            if request_index < total_requests - 1:
                time.sleep(self.delay)

        if not self.filtered_response:
            raise NoSuccessfulResponsesError(
                f"Fetch stage: No successful API responses ({total_requests} request(s) failed)"
            )
        return self.filtered_response

    # --- Stage 3: normalization ---

    def normalize_data(self) -> list[list]:
        """Turn fetched payloads into 19-cell rows sharing one date."""
        if self.filtered_response is None:
            raise SequenceError("Normalize stage: Call fetch_data() first")

        date_label = current_time(self.time_zone).strftime(DATE_FORMAT)
        self.normalized_response = []

        for payload in self.filtered_response:
            row = normalize_record(payload, date_label)
            if row is None:
                print("Warning: skipping response without record.key / record.metrics", file=sys.stderr)
                continue
            self.normalized_response.append(row)
            self._mark_normalized(url=row[2], form_factor=row[1])

        if self.filtered_response and not self.normalized_response:
            raise AllNormalizationFailedError(
                f"Normalize stage: All responses failed normalization ({len(self.filtered_response)} response(s))"
            )
        return self.normalized_response

    def _mark_normalized(self, url: str, form_factor: str) -> None:
        wanted_form_factors = {form_factor}
        if form_factor == AGGREGATED_FORM_FACTOR:
            wanted_form_factors.add("ALL_FORM_FACTORS")
        for record in self.execution_records:
            if (
                record.status == STATUS_SUCCESS
                and record.normalized != NORMALIZED_YES
                and record.form_factor in wanted_form_factors
                and _same_url(record.url, url)
            ):
                record.normalized = NORMALIZED_YES
                return

    # --- Stage 4: writing ---

    def _resolve_sheet(self, name: str, header: list[str]) -> CsvSheet:
        """Open the named tab, creating it with ``header`` when absent."""
        sheet = self.store.get_sheet(name)
        if sheet is None:
            if self.verbose:
                print(f"  Tab '{name}' does not exist, creating it", file=sys.stderr)
            sheet = self.store.insert_sheet(name)
            sheet.set_values(HEADER_ROW, [header])
            return sheet

        values = sheet.get_values()
        if values:
            header_width = len(_trim_row(values[0]))
            if header_width != len(header):
                print(
                    f"Warning: tab '{name}' header has {header_width} column(s), expected {len(header)}",
                    file=sys.stderr,
                )
        return sheet

    def add_to_spreadsheet(self) -> int:
        """Append normalized rows below the last populated row of the data tab."""
        if not self.normalized_response:
            raise SequenceError("Write stage: Call normalize_data() first")

        sheet = self._resolve_sheet(self.sheet_tab_name, DATA_HEADER)
        sheet.set_values(sheet.get_last_row() + 1, self.normalized_response)
        if self.verbose:
            print(f"  Wrote {len(self.normalized_response)} row(s) to '{self.sheet_tab_name}'", file=sys.stderr)
        return len(self.normalized_response)

    def get_execution_history_sheet(self) -> CsvSheet:
        return self._resolve_sheet(HISTORY_SHEET_TAB_NAME, HISTORY_HEADER)

    def log_execution_history(self, execution_id: str, records: list[ExecutionRecord]) -> int:
        """Append one audit row per record, all stamped with the same flush time."""
        sheet = self.get_execution_history_sheet()
        if not records:
            return 0

        flushed_at = current_time(self.time_zone).strftime(TIMESTAMP_FORMAT)
        rows = [
            [
                execution_id,
                flushed_at,
                record.url,
                record.form_factor,
                _value_or(record.status, STATUS_UNKNOWN),
                _value_or(record.response_code, MISSING_VALUE),
                _value_or(record.error_message, MISSING_VALUE),
                _value_or(record.normalized, NORMALIZED_NO),
            ]
            for record in records
        ]
        sheet.set_values(sheet.get_last_row() + 1, rows)
        return len(rows)

    def _flush_execution_history(self) -> None:
        """Best-effort audit flush; failures are reported, never raised."""
        try:
            self.log_execution_history(self.execution_id, self.execution_records)
        except Exception as exc:
            print(f"Warning: failed to write execution history: {exc}", file=sys.stderr)

    # --- Orchestration ---

    def run(self) -> ExecutionSummary:
        """Run every stage once and return the execution summary.

        On failure the records gathered so far are still flushed to the
        history tab before the original error propagates.
        """
        self.execution_id = generate_execution_id()
        self.execution_records = []
        self.requests = None
        self.filtered_response = None
        self.normalized_response = None

        if self.verbose:
            print(f"Starting extraction {self.execution_id}", file=sys.stderr)

        rows_written = 0
        try:
            self.state = "PLANNING"
            self.build_request_urls()
            self.state = "FETCHING"
            self.fetch_data()
            self.state = "NORMALIZING"
            self.normalize_data()
            self.state = "WRITING"
            rows_written = self.add_to_spreadsheet()
        except Exception:
            self._flush_execution_history()
            self.state = "FAILED"
            raise

        self.state = "LOGGING"
        self._flush_execution_history()
        self.state = "DONE"

        total_requests = len(self.requests)
        successful_responses = len(self.filtered_response)
        return ExecutionSummary(
            execution_id=self.execution_id,
            total_requests=total_requests,
            successful_responses=successful_responses,
            rows_written=rows_written,
            failed_requests=total_requests - successful_responses,
        )


def _value_or(value: object, default: object) -> object:
    return default if value is None or value == "" else value


def _same_url(left: object, right: object) -> bool:
    # The API echoes the canonical URL, which may gain a trailing slash.
    return str(left).rstrip("/") == str(right).rstrip("/")


def build_extractor(settings: dict) -> CruxExtractor:
    """Construct a CruxExtractor from a settings dict (see settings_from_args)."""
    return CruxExtractor(
        urls=settings.get("urls"),
        spreadsheet_id=settings.get("spreadsheet_id"),
        api_key=settings.get("api_key"),
        form_factors=settings.get("form_factors") or DEFAULT_FORM_FACTORS,
        crux_url=settings.get("crux_url") or DEFAULT_CRUX_URL,
        sheet_tab_name=settings.get("sheet_tab_name") or DEFAULT_SHEET_TAB_NAME,
        delay=settings.get("delay", DEFAULT_DELAY),
        timeout=settings.get("timeout", DEFAULT_TIMEOUT),
        time_zone=settings.get("time_zone"),
        verbose=bool(settings.get("verbose", False)),
    )


def run_extraction(settings: dict | None = None, run_state: RunState | None = None) -> ExecutionSummary | None:
    """Load configuration, build the extractor and run it once.

    With no settings, the discovered crux.toml and CRUX_API_KEY are used.
    Returns None without doing anything when ``run_state`` has already
    started a run.
    """
    if run_state is not None:
        if run_state.started:
            print("Skipping: an extraction already ran with this run state", file=sys.stderr)
            return None
        run_state.started = True

    if settings is None:
        args = build_argument_parser().parse_args(["run"])
        args = apply_profile(args, load_config(discover_config_path()), None)
        settings = settings_from_args(args)

    extractor = build_extractor(settings)
    return extractor.run()


# ---------------------------------------------------------------------------
# Terminal Output
# ---------------------------------------------------------------------------


def format_summary_table(summary: ExecutionSummary) -> Table:
    """Render an ExecutionSummary as a two-column rich table."""
    table = Table(title=f"Execution {summary.execution_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Total requests", str(summary.total_requests))
    table.add_row("Successful responses", str(summary.successful_responses))
    table.add_row("Rows written", str(summary.rows_written))
    table.add_row("Failed requests", str(summary.failed_requests), style="red" if summary.failed_requests else None)
    return table


def format_row_table(row: list) -> Table:
    """Render one normalized row as a metric x bucket table."""
    date_label, form_factor, url = row[:3]
    table = Table(title=f"{url} ({form_factor}) - {date_label}")
    table.add_column("Metric", style="bold")
    for bucket in HISTOGRAM_BUCKETS:
        table.add_column(bucket, justify="right")
    table.add_column("p75", justify="right")

    for metric_index, (metric_label, _) in enumerate(TRACKED_METRICS):
        start = 3 + metric_index * 4
        table.add_row(metric_label, *(str(cell) for cell in row[start : start + 4]))
    return table


def format_history_table(frame: pd.DataFrame) -> Table:
    table = Table(title="Execution History")
    for column in frame.columns:
        table.add_column(str(column))
    for _, history_row in frame.iterrows():
        status = history_row.get("Status", "")
        style = "green" if status == STATUS_SUCCESS else ("red" if status == STATUS_FAILED else None)
        table.add_row(*(str(value) for value in history_row.tolist()), style=style)
    return table


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> ExecutionSummary:
    """Run the full extraction and print the summary."""
    summary = run_extraction(settings_from_args(args))
    Console().print(format_summary_table(summary))
    return summary


# ---------------------------------------------------------------------------
# Subcommand: check
# ---------------------------------------------------------------------------


def cmd_check(args: argparse.Namespace) -> None:
    """Fetch a single URL / form factor and print the normalized row."""
    url = args.url.strip()
    if not is_valid_url(url):
        raise ConfigurationError(f"invalid URL: {args.url}")
    api_key = _require_text(args.api_key, "apiKey")
    timeout = _require_positive(args.timeout, "timeout")
    time_zone = _require_time_zone(args.time_zone)

    descriptor = RequestDescriptor(url=url, form_factor=args.form_factor)
    print(f"Fetching {url} ({args.form_factor})...", file=sys.stderr)
    payload = fetch_crux_record(descriptor, args.crux_url, api_key, timeout)

    row = normalize_record(payload, current_time(time_zone).strftime(DATE_FORMAT))
    if row is None:
        raise ParseError(f"response for {url} has no record.key / record.metrics")
    Console().print(format_row_table(row))


# ---------------------------------------------------------------------------
# Subcommand: history
# ---------------------------------------------------------------------------


def cmd_history(args: argparse.Namespace) -> None:
    """Print the most recent execution history entries."""
    spreadsheet_id = _require_text(args.spreadsheet_id, "spreadsheetId")
    sheet = CsvWorkbook(spreadsheet_id).get_sheet(HISTORY_SHEET_TAB_NAME)
    if sheet is None:
        print(f"No execution history found in {spreadsheet_id}", file=sys.stderr)
        return

    frame = read_sheet_frame(sheet)
    if args.limit > 0:
        frame = frame.tail(args.limit)
    Console().print(format_history_table(frame))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    commands = {
        "run": cmd_run,
        "check": cmd_check,
        "history": cmd_history,
    }

    try:
        config_path = Path(args.config) if args.config else discover_config_path()
        config = load_config(config_path)
        args = apply_profile(args, config, getattr(args, "profile", None))
        commands[args.command](args)
    except CruxExtractorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
