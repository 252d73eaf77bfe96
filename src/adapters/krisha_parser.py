"""krisha.kz search results parser.

Emits the relative link of every listing published today. Listing cards
carry their publication date as a short Russian label such as ``24 окт.``.
"""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Callable, Optional

from bs4 import BeautifulSoup

from core.dedup import day_start
from core.ports import ItemHandler

LOGGER = logging.getLogger(__name__)

SHORT_MONTH_NAMES = (
    "янв.", "фев.", "мар.", "апр.", "май", "июн.",
    "июл.", "авг.", "сен.", "окт.", "нояб.", "дек.",
)

CARD_SELECTOR = "section.a-list.a-search-list div.ddl_product.ddl_product_link"
STATS_SELECTOR = "div.card-stats__item"
TITLE_SELECTOR = "a.a-card__title[href]"


def date_label(moment: datetime) -> str:
    return f"{moment.day} {SHORT_MONTH_NAMES[moment.month - 1]}"


class KrishaParser:
    def __init__(self, timezone: tzinfo, now: Optional[Callable[[], datetime]] = None) -> None:
        self._timezone = timezone
        self._now = now or (lambda: datetime.now(timezone))

    def parse(self, body: bytes, handler: ItemHandler) -> None:
        soup = BeautifulSoup(body, "html.parser")

        now = self._now().astimezone(self._timezone)
        day = day_start(now, self._timezone)
        today = date_label(now)

        for card in soup.select(CARD_SELECTOR):
            stats = card.select(STATS_SELECTOR)
            if len(stats) >= 2:
                published = next(stats[1].stripped_strings, "")
                # Only today's listings are of interest.
                if published != today:
                    continue
            else:
                LOGGER.warning("Failed to find advertisement date")

            for link in card.select(TITLE_SELECTOR):
                handler(link["href"], day)
