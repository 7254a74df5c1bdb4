from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from kagglerun._logging import get_logger
from kagglerun.csvparse import CsvTable, parse_csv
from kagglerun.kaggle_cli import CliInvoker
from kagglerun.models import (
    CliError,
    CompetitionItem,
    DatasetItem,
    KernelItem,
    ListItem,
    RemoteFile,
    RunItem,
)

PAGE_SIZE = "50"
KERNEL_LANGUAGES = ("all", "python", "r", "sqlite", "julia")
KERNEL_TYPES = ("all", "notebook", "script")
COMPETITION_CATEGORIES = ("all", "featured", "research", "gettingStarted")
COMPETITION_GROUPS = ("general", "entered")
_COMPETITION_URL_RE = re.compile(r"/competitions/([^/?]+)")

_log = get_logger("listings")


@dataclass(frozen=True)
class KernelQuery:
    mine: bool = True
    search: str = ""
    language: str = "all"
    kernel_type: str = "all"

    def to_args(self) -> list[str]:
        args = ["kernels", "list", "--csv", "--page-size", PAGE_SIZE]
        if self.mine:
            args.append("--mine")
            return args
        if self.search.strip():
            args.extend(["-s", self.search.strip()])
        if self.language != "all":
            args.extend(["--language", self.language])
        if self.kernel_type != "all":
            args.extend(["--kernel-type", self.kernel_type])
        return args


@dataclass(frozen=True)
class DatasetQuery:
    mine: bool = True
    search: str = ""

    def to_args(self) -> list[str]:
        args = ["datasets", "list", "--csv", "-p", PAGE_SIZE]
        if self.mine:
            args.append("-m")
        elif self.search.strip():
            args.extend(["-s", self.search.strip()])
        return args


@dataclass(frozen=True)
class CompetitionQuery:
    search: str = ""
    category: str = "featured"
    group: str = "general"

    def to_args(self) -> list[str]:
        args = ["competitions", "list", "--csv", "--group", self.group]
        if self.group != "entered" and self.category and self.category != "all":
            args.extend(["--category", self.category])
        if self.search.strip():
            args.extend(["--search", self.search.strip()])
        return args


def competition_ref_from_url(value: str) -> str:
    match = _COMPETITION_URL_RE.search(value)
    return match.group(1) if match else value


def _title_from_slug(slug: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in slug.split("-"))


def parse_kernels(text: str, *, site_url: str) -> list[KernelItem]:
    table = parse_csv(text)
    if not table.has_column("ref"):
        return []
    items: list[KernelItem] = []
    for row in table:
        ref = table.column(row, "ref")
        if not ref:
            continue
        url = table.column(row, "url") or f"{site_url}/code/{ref}"
        items.append(KernelItem(ref=ref, url=url))
    return items


def parse_datasets(text: str, *, site_url: str) -> list[DatasetItem]:
    table = parse_csv(text)
    if not table.has_column("ref"):
        return []
    items: list[DatasetItem] = []
    for row in table:
        ref = table.column(row, "ref")
        if not ref:
            continue
        url = table.column(row, "url") or f"{site_url}/datasets/{ref}"
        items.append(DatasetItem(ref=ref, url=url))
    return items


def parse_competitions(text: str, *, site_url: str) -> list[CompetitionItem]:
    table = parse_csv(text)
    if not table.has_column("ref"):
        return []
    items: list[CompetitionItem] = []
    for row in table:
        raw_ref = table.column(row, "ref")
        ref = competition_ref_from_url(raw_ref) if "://" in raw_ref else raw_ref
        if not ref:
            continue
        items.append(
            CompetitionItem(
                ref=ref,
                title=table.column(row, "title") or _title_from_slug(ref),
                deadline=table.column(row, "deadline", "No deadline"),
                category=table.column(row, "category", "General"),
                url=table.column(row, "url") or f"{site_url}/competitions/{ref}",
            )
        )
    return items


def parse_remote_files(text: str) -> list[RemoteFile]:
    table = parse_csv(text)
    name_idx = table.index_of("name")
    size_idx = table.find_index(r"size|bytes")
    files: list[RemoteFile] = []
    for row in table:
        name = CsvTable.cell(row, name_idx)
        if name:
            files.append(RemoteFile(name=name, size=CsvTable.cell(row, size_idx)))
    return files


def list_kernels(
    cli: CliInvoker, query: KernelQuery, *, site_url: str
) -> list[KernelItem]:
    try:
        result = cli.invoke(query.to_args())
    except CliError:
        if query.mine:
            raise
        _log.warning("kernel_search_failed query=%s falling back to --mine", query)
        result = cli.invoke(KernelQuery(mine=True).to_args())
    return parse_kernels(result.stdout, site_url=site_url)


def list_datasets(
    cli: CliInvoker, query: DatasetQuery, *, site_url: str
) -> tuple[list[DatasetItem], str | None]:
    """Return datasets plus an optional notice when a fallback was used."""
    result = cli.invoke(query.to_args())
    if query.mine:
        lines = result.stdout.strip().splitlines()
        if len(lines) <= 1 or "No datasets found" in lines[0]:
            popular = cli.invoke(DatasetQuery(mine=False).to_args())
            return (
                parse_datasets(popular.stdout, site_url=site_url),
                "You have no published datasets. Showing popular datasets instead.",
            )
    return parse_datasets(result.stdout, site_url=site_url), None


def list_competitions(
    cli: CliInvoker, query: CompetitionQuery, *, site_url: str
) -> list[CompetitionItem]:
    result = cli.invoke(query.to_args())
    return parse_competitions(result.stdout, site_url=site_url)


@dataclass(frozen=True)
class ItemView:
    kind: str
    label: str
    description: str
    url: str

    def to_json(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "label": self.label,
            "description": self.description,
            "url": self.url,
        }


def render_item(item: ListItem) -> ItemView:
    if isinstance(item, RunItem):
        description = ""
        if item.is_latest and item.status == "complete":
            description = "outputs ready"
        elif item.is_latest and item.status == "pending":
            description = "waiting"
        return ItemView(item.kind, item.timestamp, description, item.url)
    if isinstance(item, KernelItem):
        return ItemView(item.kind, item.ref, "", item.url)
    if isinstance(item, DatasetItem):
        return ItemView(item.kind, item.ref, "", item.url)
    if isinstance(item, CompetitionItem):
        return ItemView(
            item.kind,
            item.title,
            f"{item.ref} ({item.category}, deadline {item.deadline})",
            item.url,
        )
    if isinstance(item, RemoteFile):
        return ItemView(item.kind, item.name, item.size, "")
    raise TypeError(f"Unsupported list item: {type(item).__name__}")
