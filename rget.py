#!/usr/bin/env python3
import argparse
import logging
import sys
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import format_datetime
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Set, Union
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup, FeatureNotFound, ParserRejectedMarkup
from bs4.element import Tag
from requests.adapters import HTTPAdapter

__version__ = "0.1.0"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = [logging.ERROR, logging.INFO, logging.DEBUG, TRACE]

FETCHABLE_SCHEMES = {"http", "https"}

# config file key -> argparse dest
CONFIG_KEYS = {
    "metadata": "show_metadata",
    "rewrite": "rewrite_assets",
    "output": "output",
    "timeout": "timeout",
    "workers": "workers",
    "verbose": "verbose",
}

# -------------------- Settings --------------------


@dataclass
class Settings:
    show_metadata: bool = False
    rewrite_assets: bool = False
    output_dir: Path = Path(".")
    timeout: Optional[float] = None
    workers: int = 16


# -------------------- Errors --------------------


class RgetError(Exception):
    pass


class InvalidSeedURL(RgetError, ValueError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"{url!r}: {reason}")
        self.url = url


class FetchError(RgetError):
    """Failure of a single task; the scheduler logs it and drops the task."""

    def __init__(self, url: str, reason: str):
        super().__init__(reason)
        self.url = url


class HTTPStatusError(FetchError):
    def __init__(self, url: str, status: int):
        super().__init__(url, f"HTTP {status}")
        self.status = status


class DecodeError(FetchError):
    pass


class ParseError(FetchError):
    pass


# -------------------- Utils --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def filename_for_url(url: str) -> str:
    p = urlparse(url)
    host = p.hostname
    if not host:
        raise ValueError(f"url has no host: {url!r}")
    if PurePosixPath(p.path).name in ("", ".."):
        return f"{host}.html"
    return host + p.path.replace("/", "_")


def parse_seed_url(u: str) -> str:
    try:
        p = urlparse(u)
        host = p.hostname
        p.port  # raises on a non-numeric or out-of-range port
    except ValueError as e:
        raise InvalidSeedURL(u, str(e)) from e
    if p.scheme not in FETCHABLE_SCHEMES:
        raise InvalidSeedURL(u, "use http:// or https://")
    if not host:
        raise InvalidSeedURL(u, "missing host")
    return u


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def write_output(path: Path, body: bytes) -> None:
    ensure_parent_dir(path)
    with open(path, "wb") as f:
        f.write(body)


# -------------------- HTML utils --------------------


def bs4_parse(html: str, url: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except (FeatureNotFound, ParserRejectedMarkup) as e:
        logging.debug("lxml could not parse %s (%s), using html.parser", url, e)
    try:
        return BeautifulSoup(html, "html.parser")
    except ParserRejectedMarkup as e:
        raise ParseError(url, f"markup rejected: {e}") from e


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="minimal")


# -------------------- Filters --------------------


@dataclass
class FetchOutcome:
    body: bytes
    assets: List[str] = field(default_factory=list)


def filter_noop(resp: requests.Response) -> FetchOutcome:
    return FetchOutcome(resp.content)


def rewrite_image(tag: Tag, page_url: str, assets: List[str]) -> None:
    src = tag.get("src")
    if src is None:
        return
    logging.debug("rewriting image %s", tag)
    if not can_fetch_url(src):
        logging.warning("skipping image source %r on %s", src, page_url)
        return
    try:
        asset_url = urljoin(page_url, src.strip())
        if urlparse(asset_url).scheme not in FETCHABLE_SCHEMES:
            logging.warning("skipping image source %r on %s", src, page_url)
            return
        dst = filename_for_url(asset_url)
    except ValueError as e:
        logging.warning("cannot resolve image source %r on %s: %s", src, page_url, e)
        return
    logging.info("rewriting asset: %s => %s", src, dst)
    tag["src"] = dst
    assets.append(asset_url)


def print_metadata(page_url: str, counts: Counter) -> None:
    # single write, blocks from concurrent pages must not interleave
    sys.stderr.write(
        f"site: {urlparse(page_url).hostname}\n"
        f"num_links: {counts['a']}\n"
        f"images: {counts['img']}\n"
        f"last_fetch: {format_datetime(datetime.now().astimezone())}\n"
    )


def filter_html(
    resp: requests.Response, page_url: str, rewrite_assets: bool
) -> FetchOutcome:
    content_type = resp.headers.get("content-type")
    if not content_type or not content_type.startswith("text/html"):
        logging.warning("skipping non-html document %s (%s)", page_url, content_type)
        return FetchOutcome(resp.content)

    raw = resp.content
    try:
        html = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(page_url, f"body is not valid UTF-8: {e}") from e
    soup = bs4_parse(html, page_url)

    counts: Counter = Counter()
    assets: List[str] = []
    # flat walk, hierarchy is irrelevant here
    for tag in soup.find_all(True):
        counts[tag.name] += 1
        if rewrite_assets and tag.name == "img":
            rewrite_image(tag, page_url, assets)
    logging.log(TRACE, "tag counts for %s: %s", page_url, dict(counts))
    print_metadata(page_url, counts)

    if not rewrite_assets:
        return FetchOutcome(raw)
    return FetchOutcome(serialize_html(soup).encode("utf-8"), assets)


# -------------------- Tasks --------------------


@dataclass(frozen=True)
class Task:
    url: str
    out_path: str

    @classmethod
    def for_url(cls, url: str) -> "Task":
        return cls(url, filename_for_url(url))

    def execute(
        self,
        session: requests.Session,
        settings: Settings,
        show_metadata: bool,
        rewrite_assets: bool,
    ) -> List["Task"]:
        logging.info("Fetching %s => %s", self.url, self.out_path)
        resp = session.get(self.url, timeout=settings.timeout)
        if not 200 <= resp.status_code < 300:
            raise HTTPStatusError(self.url, resp.status_code)
        if show_metadata:
            outcome = filter_html(resp, self.url, rewrite_assets)
        else:
            outcome = filter_noop(resp)
        write_output(settings.output_dir / self.out_path, outcome.body)
        logging.debug("wrote %d bytes to %s", len(outcome.body), self.out_path)
        return [Task.for_url(u) for u in outcome.assets]


# -------------------- Scheduler --------------------


@dataclass
class RunStats:
    succeeded: int = 0
    failed: int = 0


def build_session(pool_size: int = 16) -> requests.Session:
    s = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    return s


def run_tasks(
    tasks: Iterable[Task], session: requests.Session, settings: Settings
) -> RunStats:
    stats = RunStats()
    claimed: Dict[str, str] = {}
    scheduled: Set[str] = set()
    in_flight: Dict[Future, Task] = {}

    with ThreadPoolExecutor(max_workers=settings.workers) as pool:

        def submit(task: Task, show_metadata: bool, rewrite_assets: bool) -> None:
            owner = claimed.get(task.out_path)
            if owner is not None and owner != task.url:
                logging.warning(
                    "%s and %s both map to %s, last write wins",
                    owner,
                    task.url,
                    task.out_path,
                )
            claimed[task.out_path] = task.url
            scheduled.add(task.url)
            fut = pool.submit(
                task.execute, session, settings, show_metadata, rewrite_assets
            )
            in_flight[fut] = task

        for task in tasks:
            submit(task, settings.show_metadata, settings.rewrite_assets)

        while in_flight:
            done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            for fut in done:
                task = in_flight.pop(fut)
                try:
                    sub_tasks = fut.result()
                except (FetchError, requests.RequestException, OSError) as e:
                    stats.failed += 1
                    logging.error("error while fetching %s: %s", task.url, e)
                    continue
                except Exception:
                    stats.failed += 1
                    logging.exception("unexpected error while fetching %s", task.url)
                    continue
                stats.succeeded += 1
                for sub in sub_tasks:
                    if sub.url in scheduled:
                        logging.debug("already scheduled: %s", sub.url)
                        continue
                    # assets are fetched as-is, never inspected
                    submit(sub, False, False)
    return stats


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        with open(p, "rb") as f:
            data = tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise RuntimeError(f"invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise RuntimeError("Top-level YAML must be a mapping")
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")

    flat = {k: v for k, v in data.items() if k != "general"}
    if isinstance(data.get("general"), dict):
        flat.update(data["general"])
    defaults = {}
    for key, value in flat.items():
        if key not in CONFIG_KEYS:
            raise RuntimeError(f"unknown config key: {key}")
        defaults[CONFIG_KEYS[key]] = value
    return defaults


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rget",
        description="Fetch URLs concurrently, optionally rewriting page images to local files.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument(
        "-m",
        "--metadata",
        dest="show_metadata",
        action="store_true",
        help="show page metadata (links, images, fetch time)",
    )
    p.add_argument(
        "-r",
        "--rewrite",
        dest="rewrite_assets",
        action="store_true",
        help="download images and rewrite their references (needs --metadata)",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="add more verbosity (up to -vvv)",
    )
    p.add_argument(
        "-o", "--output", type=Path, default=Path("."), help="output directory"
    )
    p.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="per-request timeout seconds (default: none)",
    )
    p.add_argument("--workers", type=int, default=16, help="concurrent downloads")
    p.add_argument("urls", nargs="*", help="http(s) URLs to fetch")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        try:
            parser.set_defaults(**load_config_file(preliminary.config))
        except (RuntimeError, OSError, ValueError) as e:
            parser.error(f"cannot load config {preliminary.config}: {e}")
    return parser.parse_args(argv)


def log_level_for(verbose: int) -> int:
    return VERBOSITY_LEVELS[min(max(verbose, 0), len(VERBOSITY_LEVELS) - 1)]


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=log_level_for(args.verbose),
        format="%(levelname)s: %(message)s",
    )

    if not args.urls:
        print("No urls provided", file=sys.stderr)
        return
    try:
        tasks = [Task.for_url(parse_seed_url(u)) for u in args.urls]
    except InvalidSeedURL as e:
        print(f"Invalid URL {e}", file=sys.stderr)
        sys.exit(1)

    settings = Settings(
        show_metadata=args.show_metadata,
        rewrite_assets=args.rewrite_assets,
        output_dir=Path(args.output),
        timeout=args.timeout,
        workers=max(1, args.workers),
    )
    if settings.rewrite_assets and not settings.show_metadata:
        logging.warning("--rewrite has no effect without --metadata")
    settings.output_dir.mkdir(parents=True, exist_ok=True)

    session = build_session(settings.workers)
    try:
        stats = run_tasks(tasks, session, settings)
    finally:
        session.close()
    logging.info("done: %d succeeded, %d failed", stats.succeeded, stats.failed)


if __name__ == "__main__":
    main()
