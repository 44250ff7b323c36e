import os
import copy
import re
import sys
import json
import getpass
import logging
import logging.config
import argparse
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Union

import yaml
from rapidfuzz import fuzz, process, utils
from tabulate import tabulate

from plex_api import LibrarySection, PlexClient, PlexError, ShowSummary

# =========================
# Global constants
# =========================
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
LOG_DIRECTORY = os.path.join(SCRIPT_DIR, 'logs')

LOG_FILE = os.path.join(LOG_DIRECTORY, 'plexbacklog.log')
CONFIG_PATH = os.path.join(SCRIPT_DIR, 'config.yaml')

DEFAULT_HOST = 'localhost'
DEFAULT_PORT = 32400
DEFAULT_SCHEME = 'http'
DEFAULT_TIMEOUT = 10.0

SECTION_MATCH_THRESHOLD = 80
REPORT_HEADERS = ["Title", "Status", "Unwatched"]
LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# =========================
# Logging setup
# =========================
class Colors:
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'

class ColoredFormatter(logging.Formatter):
    colon_pattern = re.compile(r'^(.*?):\s(.*)$')

    def format(self, record):
        base_message = super().format(record)
        if getattr(record, 'is_console', False):
            match = self.colon_pattern.match(base_message)
            if match:
                label_part = match.group(1)
                value_part = match.group(2)
                colored_label = f"{Colors.OKCYAN}{label_part}{Colors.ENDC}"
                colored_value = f"{Colors.OKBLUE}{value_part}{Colors.ENDC}"
                base_message = f"{colored_label}: {colored_value}"
        return base_message

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "lvl": record.levelname,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)

class ConsoleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.is_console = True
        return True

LOGGING_CONFIG = {
    'version': 1,
    'disable_existing_loggers': False,

    'formatters': {
        'colored': {'()': f'{__name__}.ColoredFormatter',
                    'format': '%(asctime)s - %(levelname)s - %(message)s'},
        'json':    {'()': f'{__name__}.JsonFormatter'}
    },

    'filters': {
        'console_filter': {'()': f'{__name__}.ConsoleFilter'},
    },

    'handlers': {
        'console': {
            'level': 'DEBUG', 'class': 'logging.StreamHandler',
            'formatter': 'colored',
            'filters': ['console_filter']
        },
        'file': {
            'level': 'DEBUG', 'class': 'logging.FileHandler',
            'filename': LOG_FILE, 'formatter': 'json', 'encoding': 'utf-8',
        }
    },

    'root': {
        'level': 'INFO',
        'handlers': ['console', 'file']
    }
}

def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> dict:
    config = copy.deepcopy(LOGGING_CONFIG)
    if level:
        config['root']['level'] = level.upper()
    if log_file:
        config['handlers']['file']['filename'] = log_file
    log_dir = os.path.dirname(os.path.abspath(config['handlers']['file']['filename']))
    os.makedirs(log_dir, exist_ok=True)
    logging.config.dictConfig(config)
    return config

# =========================
# Errors
# =========================
class ValidationError(Exception):
    """Bad bound/limit ordering or a malformed setting."""

class NoTvSectionFound(Exception):
    """The server has no library section of type 'show'."""

class SectionNotFound(Exception):
    """A section title given on the command line matched nothing."""

# =========================
# Config loading
# =========================
def load_config(path: str, required: bool = False) -> dict:
    """Read config.yaml. A missing file is only fatal when it was asked for."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        if not required:
            logging.debug(f"No configuration file at {path}, using defaults.")
            return {}
        logging.critical(f"Configuration file not found at {path}.")
        sys.exit(1)
    except yaml.YAMLError as e:
        logging.critical(f"Error parsing '{path}': {e}")
        sys.exit(1)

    if not isinstance(config, dict):
        logging.critical(f"Configuration file '{path}' must contain a mapping.")
        sys.exit(1)
    return config

def _pick(*values):
    for value in values:
        if value is not None:
            return value
    return None

def _int_setting(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r'-?[0-9]+', value.strip()):
        return int(value.strip())
    raise ValidationError(f"{name} must be an integer, got {value!r}")

def parse_section_arg(value: Any) -> Union[int, str, None]:
    """Section keys are integers; anything else is treated as a title."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r'[0-9]+', text):
        return int(text)
    return text

# =========================
# Thresholds
# =========================
class Severity(Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"

SEVERITY_COLORS = {
    Severity.NORMAL: Colors.OKGREEN,
    Severity.WARNING: Colors.WARNING,
    Severity.CRITICAL: Colors.FAIL,
}

@dataclass(frozen=True)
class ThresholdConfig:
    lower_bound: Optional[int] = None
    upper_bound: Optional[int] = None
    yellow_limit: Optional[int] = None
    red_limit: Optional[int] = None

    @property
    def has_limits(self) -> bool:
        return self.yellow_limit is not None or self.red_limit is not None

def validate_thresholds(thresholds: ThresholdConfig) -> None:
    errors = []
    for name, value in (("lower bound", thresholds.lower_bound),
                        ("upper bound", thresholds.upper_bound),
                        ("yellow limit", thresholds.yellow_limit),
                        ("red limit", thresholds.red_limit)):
        if value is not None and value < 0:
            errors.append(f"{name} must not be negative ({value})")

    lower, upper = thresholds.lower_bound, thresholds.upper_bound
    if lower is not None and upper is not None and upper <= lower:
        errors.append(f"upper bound ({upper}) must be greater than lower bound ({lower})")

    for name, value in (("yellow limit", thresholds.yellow_limit),
                        ("red limit", thresholds.red_limit)):
        if value is None:
            continue
        if lower is not None and value < lower:
            errors.append(f"{name} ({value}) is below the lower bound ({lower})")
        if upper is not None and value > upper:
            errors.append(f"{name} ({value}) is above the upper bound ({upper})")

    if errors:
        raise ValidationError("; ".join(errors))

    yellow, red = thresholds.yellow_limit, thresholds.red_limit
    if yellow is not None and red is not None and yellow >= red:
        logging.warning(f"Yellow limit ({yellow}) is not below red limit ({red}); no show will be shown as a warning.")

def classify_severity(count: int, thresholds: ThresholdConfig) -> Severity:
    if not thresholds.has_limits:
        return Severity.NORMAL
    if thresholds.red_limit is not None and count >= thresholds.red_limit:
        return Severity.CRITICAL
    if thresholds.yellow_limit is not None and count >= thresholds.yellow_limit:
        return Severity.WARNING
    return Severity.NORMAL

def in_range(count: int, thresholds: ThresholdConfig) -> bool:
    if thresholds.lower_bound is not None and count < thresholds.lower_bound:
        return False
    if thresholds.upper_bound is not None and count > thresholds.upper_bound:
        return False
    return True

def status_label(total: int, watched: int) -> str:
    if total == 0:
        return "No Episodes"
    if watched == total:
        return "Completed"
    if watched > 0:
        return "Partially Watched"
    return "Unwatched"

# =========================
# Section resolution
# =========================
def tv_sections(sections: List[LibrarySection]) -> List[LibrarySection]:
    return [s for s in sections if s.type == 'show']

def resolve_section(sections: List[LibrarySection],
                    prompt: Callable[[str], str] = input) -> LibrarySection:
    """
    Pick the TV section to report on:
      - no show sections -> NoTvSectionFound
      - exactly one -> used without asking
      - several -> numbered menu, asked until a valid 1-based index is given
    """
    candidates = tv_sections(sections)
    if not candidates:
        raise NoTvSectionFound("No TV show sections found on the Plex server.")

    if len(candidates) == 1:
        chosen = candidates[0]
        logging.info(f"Using TV section: {chosen.title} (key {chosen.key})")
        return chosen

    print("Multiple TV sections found:")
    for number, section in enumerate(candidates, start=1):
        print(f"  {number}. {section.title} (key {section.key})")

    count = len(candidates)
    while True:
        answer = prompt(f"Select a section [1-{count}]: ").strip()
        if re.fullmatch(r'[0-9]+', answer) and 1 <= int(answer) <= count:
            break
        print(f"Please enter a number between 1 and {count}.")

    chosen = candidates[int(answer) - 1]
    logging.info(f"Selected TV section: {chosen.title} (key {chosen.key})")
    return chosen

def find_section_by_title(sections: List[LibrarySection], title: str) -> LibrarySection:
    candidates = tv_sections(sections)
    if not candidates:
        raise NoTvSectionFound("No TV show sections found on the Plex server.")

    wanted = title.strip().casefold()
    for section in candidates:
        if section.title.casefold() == wanted:
            return section

    match = process.extractOne(
        title,
        [s.title for s in candidates],
        scorer=fuzz.ratio,
        processor=utils.default_process,
        score_cutoff=SECTION_MATCH_THRESHOLD,
    )
    if match is None:
        names = ', '.join(s.title for s in candidates)
        raise SectionNotFound(f"No TV section matches '{title}' (available: {names})")

    chosen = candidates[match[2]]
    logging.info(f"Matched '{title}' to TV section: {chosen.title} (key {chosen.key})")
    return chosen

# =========================
# Report rendering
# =========================
def colorize(value: Any, color: Optional[str]) -> str:
    if not color:
        return str(value)
    return f"{color}{value}{Colors.ENDC}"

def select_shows(shows: List[ShowSummary], thresholds: ThresholdConfig) -> List[ShowSummary]:
    # sorted() is stable, so ties keep the order Plex returned them in
    ordered = sorted(shows, key=lambda s: s.unwatched)
    return [s for s in ordered if in_range(s.unwatched, thresholds)]

def build_rows(shows: List[ShowSummary], thresholds: ThresholdConfig) -> List[List[str]]:
    rows = []
    for show in select_shows(shows, thresholds):
        color = None
        if thresholds.has_limits:
            color = SEVERITY_COLORS[classify_severity(show.unwatched, thresholds)]
        label = status_label(show.total_episodes, show.watched_episodes)
        rows.append([
            colorize(show.title, color),
            colorize(label, color),
            colorize(show.unwatched, color),
        ])
    return rows

def render_report(shows: List[ShowSummary], thresholds: ThresholdConfig) -> str:
    selected = select_shows(shows, thresholds)
    if not selected:
        return ""
    table = tabulate(
        build_rows(selected, thresholds),
        headers=REPORT_HEADERS,
        tablefmt="simple",
        colalign=("left", "left", "right"),
        disable_numparse=True,
    )
    total_unwatched = sum(s.unwatched for s in selected)
    return f"{table}\n\nShows: {len(selected)}, unwatched episodes: {total_unwatched}"

# =========================
# Runtime settings
# =========================
@dataclass
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    scheme: str = DEFAULT_SCHEME
    timeout: float = DEFAULT_TIMEOUT
    token: Optional[str] = None
    section: Union[int, str, None] = None
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    log_level: Optional[str] = None

def load_settings(args: argparse.Namespace) -> Settings:
    """Merge command line > environment > config.yaml > defaults."""
    cfg = load_config(args.config or CONFIG_PATH, required=args.config is not None)

    plex = cfg.get('PLEX') or {}
    report = cfg.get('REPORT') or {}
    if not isinstance(plex, dict) or not isinstance(report, dict):
        raise ValidationError("PLEX and REPORT must be mappings in the configuration file")

    port = _int_setting(_pick(args.port, os.environ.get('PLEX_PORT'), plex.get('PORT'), DEFAULT_PORT), "port")
    if not 1 <= port <= 65535:
        raise ValidationError(f"port must be between 1 and 65535, got {port}")

    scheme = str(_pick(args.scheme, plex.get('SCHEME'), DEFAULT_SCHEME)).lower()
    if scheme not in ('http', 'https'):
        raise ValidationError(f"scheme must be 'http' or 'https', got {scheme!r}")

    raw_timeout = _pick(args.timeout, plex.get('TIMEOUT'), DEFAULT_TIMEOUT)
    try:
        timeout = float(raw_timeout)
    except (TypeError, ValueError):
        raise ValidationError(f"timeout must be a number, got {raw_timeout!r}") from None
    if timeout <= 0:
        raise ValidationError(f"timeout must be positive, got {timeout}")

    thresholds = ThresholdConfig(
        lower_bound=_int_setting(_pick(args.lower, report.get('LOWER_BOUND')), "lower bound"),
        upper_bound=_int_setting(_pick(args.upper, report.get('UPPER_BOUND')), "upper bound"),
        yellow_limit=_int_setting(_pick(args.yellow, report.get('YELLOW_LIMIT')), "yellow limit"),
        red_limit=_int_setting(_pick(args.red, report.get('RED_LIMIT')), "red limit"),
    )

    log_level = _pick(os.environ.get('LOG_LEVEL') or None, cfg.get('LOG_LEVEL'))
    if log_level is not None and str(log_level).upper() not in LOG_LEVELS:
        raise ValidationError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

    return Settings(
        host=str(_pick(args.host, os.environ.get('PLEX_HOST'), plex.get('HOST'), DEFAULT_HOST)),
        port=port,
        scheme=scheme,
        timeout=timeout,
        token=args.token or os.environ.get('PLEX_TOKEN') or plex.get('TOKEN') or None,
        section=parse_section_arg(_pick(args.section, report.get('SECTION'))),
        thresholds=thresholds,
        log_level=str(log_level).upper() if log_level is not None else None,
    )

def acquire_token(token: Optional[str], prompt: Callable[[str], str] = getpass.getpass) -> str:
    """Return the supplied token, or ask for it without echoing."""
    if token:
        return str(token)
    entered = prompt("Plex token: ").strip()
    if not entered:
        raise ValidationError("A Plex token is required.")
    return entered

def run_report(settings: Settings, client: PlexClient,
               prompt: Callable[[str], str] = input) -> str:
    section = settings.section
    if section is None:
        section_id = resolve_section(client.list_sections(), prompt).key
    elif isinstance(section, str):
        section_id = find_section_by_title(client.list_sections(), section).key
    else:
        section_id = section

    shows = client.list_shows(section_id)
    logging.info(f"Fetched {len(shows)} shows from section {section_id}")
    return render_report(shows, settings.thresholds)

# =========================
# Main
# =========================
def parse_cli_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='plexbacklog', description='Report unwatched episodes in a Plex TV library')
    parser.add_argument('-c', '--config', default=None, help='Path to config.yaml')
    parser.add_argument('-s', '--section', help='Library section key or title (prompted when omitted)')
    parser.add_argument('-l', '--lower', help='Only show shows with at least this many unwatched episodes')
    parser.add_argument('-u', '--upper', help='Only show shows with at most this many unwatched episodes')
    parser.add_argument('-y', '--yellow', help='Highlight shows with at least this many unwatched episodes in yellow')
    parser.add_argument('-r', '--red', help='Highlight shows with at least this many unwatched episodes in red')
    parser.add_argument('--host', help=f'Plex server host (default {DEFAULT_HOST})')
    parser.add_argument('--port', help=f'Plex server port (default {DEFAULT_PORT})')
    parser.add_argument('--scheme', choices=['http', 'https'], help=f'URL scheme (default {DEFAULT_SCHEME})')
    parser.add_argument('--token', help='Plex token (prompted when omitted and PLEX_TOKEN is unset)')
    parser.add_argument('--timeout', help=f'Request timeout in seconds (default {DEFAULT_TIMEOUT:g})')
    parser.add_argument('--log-level', type=str.upper, choices=LOG_LEVELS, help='Console and file log level')
    parser.add_argument('--log-file', help='Path of the JSON log file')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_cli_args(argv)
    except SystemExit as e:
        # argparse exits 2 on usage errors; --help exits 0
        return 0 if not e.code else 1

    try:
        setup_logging(args.log_level, args.log_file)
    except (OSError, ValueError) as e:
        print(f"error: cannot set up logging: {e}", file=sys.stderr)
        return 1

    try:
        settings = load_settings(args)
        if settings.log_level and not args.log_level:
            logging.getLogger().setLevel(settings.log_level)
        validate_thresholds(settings.thresholds)

        client = PlexClient(
            settings.host,
            settings.port,
            acquire_token(settings.token),
            scheme=settings.scheme,
            timeout=settings.timeout,
        )
        report = run_report(settings, client)
    except ValidationError as e:
        logging.error(f"Invalid configuration: {e}")
        return 1
    except (NoTvSectionFound, SectionNotFound) as e:
        logging.error(str(e))
        return 1
    except PlexError as e:
        logging.error(f"Plex request failed: {e}")
        return 1
    except (KeyboardInterrupt, EOFError):
        return 130
    except SystemExit as e:
        return int(e.code or 1)
    except Exception:
        logging.exception("Unexpected error while building the report")
        return 1

    if report:
        print(report)
    else:
        logging.info("No shows matched the requested range.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
