"""HTML builders shaped like the model library's listing, detail and tags pages."""

from __future__ import annotations

from dataclasses import dataclass, field

LISTING_PATH = "/library?sort=newest"


@dataclass
class Family:
    title: str
    introduction: str = "A family of open models."
    pull_count: str = "1.2M"
    tag_count: str = "12"
    updated: str = "2 weeks ago"
    summary: str = "Summary text."
    readme: str = "Readme text."
    variants: list[tuple[str, str, str, str, str]] = field(default_factory=list)

    @property
    def href(self) -> str:
        return f"/library/{self.title}"


def listing_item(family: Family) -> str:
    return (
        f'<li><a href="{family.href}">'
        f'<div x-test-model-title title="{family.title}">'
        f"<h2>{family.title}</h2><p>{family.introduction}</p></div>"
        f"<div><span x-test-pull-count>{family.pull_count}</span>"
        f"<span x-test-tag-count>{family.tag_count}</span>"
        f"<span x-test-updated>{family.updated}</span></div>"
        "</a></li>"
    )


def listing_page(*families: Family, extra_items: str = "") -> str:
    items = "".join(listing_item(f) for f in families)
    return (
        "<html><body><main>"
        f'<div id="repo"><ul role="list">{items}{extra_items}</ul></div>'
        "</main></body></html>"
    )


def detail_page(family: Family) -> str:
    return (
        "<html><body>"
        f'<span id="summary-content">{family.summary}</span>'
        f'<div id="readme"><div id="display"><p>{family.readme}</p></div></div>'
        "</body></html>"
    )


def variant_row(name: str, size: str, context: str, input_: str, short_hash: str) -> str:
    return (
        "<div>"
        f'<span><a href="/library/{name}">{name}</a></span>'
        f"<p>{size}</p><p>{context}</p>"
        f'<div class="col-span-2">{input_}</div>'
        f'<div><span class="font-mono">{short_hash}</span></div>'
        "</div>"
    )


def tags_page(family: Family, extra_rows: str = "") -> str:
    rows = "".join(variant_row(*v) for v in family.variants)
    return (
        "<html><body><section><div><div>"
        f"<div><p>Name</p></div>{rows}{extra_rows}"
        "</div></div></section></body></html>"
    )


def library_files(*families: Family) -> dict[str, bytes]:
    """Path -> body map for a fake library site serving the given families."""
    files = {LISTING_PATH: listing_page(*families).encode()}
    for family in families:
        files[family.href] = detail_page(family).encode()
        files[f"{family.href}/tags"] = tags_page(family).encode()
    return files
