"""
Multi-strategy label/value lookup over a detail panel's HTML.

Detail panels are not consistently marked up: most fields are a
``<dt>label</dt><dd>value</dd>`` pair, some are a label element followed by a
sibling holding the value, a few put both in one element ("Status: Active").
``FieldExtractor`` tries an ordered list of strategies and keeps the first
non-empty answer; a field no strategy can find is an empty string.

Uses BeautifulSoup with the lxml parser.
"""

import re
from collections.abc import Callable, Iterable, Mapping, Sequence

from bs4 import BeautifulSoup, NavigableString, Tag

from lienflow.utils.logging import get_logger

logger = get_logger(__name__)

Strategy = Callable[[BeautifulSoup, str], str]


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def defined_term(soup: BeautifulSoup, label: str) -> str:
    """``<dt>`` whose text contains the label, value from the following ``<dd>``."""
    for dt in soup.select("dt"):
        if label in dt.get_text(" ", strip=True):
            dd = dt.find_next_sibling("dd")
            if dd is not None:
                return _clean(dd.get_text(" ", strip=True))
    return ""


def sibling_scan(soup: BeautifulSoup, label: str) -> str:
    """
    Positional fallback.

    Takes the last element whose own text carries the label, then walks the
    children of its parent: the child after the one holding the label is the
    value. Climbs one more level when the label is wrapped (``<div><b>..</b></div>``).
    """
    hits = soup.find_all(string=lambda s: isinstance(s, NavigableString) and label in s)
    if not hits:
        return ""

    node = hits[-1].parent
    for _ in range(2):
        parent = node.parent if node is not None else None
        if not isinstance(parent, Tag):
            return ""

        children = [child for child in parent.children if isinstance(child, Tag)]
        for current, following in zip(children, children[1:]):
            if label in current.get_text(" ", strip=True):
                value = _clean(following.get_text(" ", strip=True))
                if value:
                    return value
        node = parent
    return ""


def inline_text(soup: BeautifulSoup, label: str) -> str:
    """Label and value in the same text node, e.g. ``Status: Active``."""
    pattern = re.compile(rf"{re.escape(label)}\s*:?\s*(.+)")
    for string in soup.find_all(string=lambda s: isinstance(s, NavigableString) and label in s):
        match = pattern.search(str(string))
        if match:
            value = _clean(match.group(1))
            if value:
                return value
    return ""


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (defined_term, sibling_scan, inline_text)


class FieldExtractor:
    """
    Ordered strategy lookup of labelled fields.

    Example:
        >>> extractor = FieldExtractor()
        >>> extractor.extract("<dl><dt>Debtor Name</dt><dd>JOHN SMITH</dd></dl>", "Debtor Name")
        'JOHN SMITH'
    """

    def __init__(self, strategies: Sequence[Strategy] = DEFAULT_STRATEGIES) -> None:
        self._strategies = tuple(strategies)

    def _lookup(self, soup: BeautifulSoup, label: str) -> str:
        for strategy in self._strategies:
            try:
                value = strategy(soup, label)
            except (AttributeError, TypeError, ValueError) as e:
                logger.debug(
                    "Field strategy failed", strategy=strategy.__name__, label=label, error=str(e)
                )
                continue
            if value:
                return value
        return ""

    def extract(self, html: str, label: str) -> str:
        """Value of one labelled field, or ``""``."""
        return self._lookup(BeautifulSoup(html or "", "lxml"), label)

    def extract_many(self, html: str, labels: Mapping[str, str] | Iterable[tuple[str, str]]) -> dict[str, str]:
        """
        Values for several fields parsed from one document.

        Args:
            html: Panel HTML
            labels: Mapping of output key to on-page label

        Returns:
            Output key to value (``""`` where nothing was found)
        """
        soup = BeautifulSoup(html or "", "lxml")
        pairs = labels.items() if isinstance(labels, Mapping) else labels
        return {key: self._lookup(soup, label) for key, label in pairs}
