"""
NeverlandsSession
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import dataclasses
import logging
import re
from typing import Optional

from content_filters.helpers import parse_js_array, sub_string
from profile_data import Profile

GAME_URL = "http://www.neverlands.ru"

WAIT_BOX_EMPTY = "id=wtime></div>"
WAIT_BOX_BUSY = "id=wtime><i>Обработка данных...</i></div>"

FIGHT_START = "var fight_ty = ["
FIGHT_END = "];"

INVENTORY_START = "</b></font></td></tr>"
INVENTORY_ROW = re.compile(r"<tr[^>]*>.*?</tr>", re.IGNORECASE | re.DOTALL)

VITALS = re.compile(r"ins_hp\(([^)]+)\)")
FISHING_ROD_WORDS = ("удочка", "спиннинг")
TAGS = re.compile(r"<[^>]+>")

TRADE_RETURN_BUTTON = "onclick=\"location='../main.php'\" value=\"Вернуться в игру\""


@dataclasses.dataclass
class TradeOffer:
    seller: Optional[str]
    item: Optional[str]
    level: Optional[str]
    price: int


def rob_link(entry: list[str]) -> Optional[str]:
    if len(entry) <= 3:
        return None
    return f"{GAME_URL}/main.php?get_id=17&type=0&p={entry[3]}&uid={entry[0]}&s=0&m=0&vcode={entry[1]}"


def raid_link(entry: list[str]) -> Optional[str]:
    if len(entry) <= 5:
        return None
    return (f"{GAME_URL}/main.php?get_id=17&type={entry[0]}&p={entry[1]}&uid={entry[2]}"
            f"&s={entry[3]}&m={entry[4]}&vcode={entry[5]}")


def fight_actions(html: str) -> dict[str, str]:
    """Rob and raid links offered by the fight block of main.php, if any."""
    actions = dict()
    fight_data = sub_string(html, FIGHT_START, FIGHT_END)
    if not fight_data:
        return actions
    fight = parse_js_array(fight_data)
    if fight is None:
        return actions
    if len(fight) > 10 and fight[10] and fight[10][0]:
        link = rob_link(fight[10])
        if link:
            actions["rob"] = link
    if len(fight) > 9 and fight[9] and fight[9][0]:
        link = raid_link(fight[9])
        if link:
            actions["raid"] = link
    return actions


def vitals(html: str) -> Optional[tuple[float, float]]:
    for match in VITALS.finditer(html):
        params = match.group(1).split(",")
        if len(params) < 6:
            continue
        try:
            return float(params[4].strip()), float(params[5].strip())
        except ValueError:
            logging.debug(f"Unparseable ins_hp arguments: {match.group(1)}")
    return None


def fishing_rods(html: str) -> list[str]:
    """Inventory rows naming a fishing rod, as plain text."""
    rods = []
    for match in INVENTORY_ROW.finditer(html):
        text = " ".join(TAGS.sub(" ", match.group(0)).split())
        if any(word in text.lower() for word in FISHING_ROD_WORDS):
            rods.append(text)
    return rods


def _with_counter(row: str, count: int) -> str:
    end = row.lower().rfind("</td>")
    if end == -1:
        return row
    return f"{row[:end]} <b>(x{count})</b>{row[end:]}"


def pack_inventory(html: str) -> str:
    """Collapse runs of identical inventory rows into one row carrying an (xN) counter."""
    start = html.find(INVENTORY_START)
    if start == -1:
        return html
    start += len(INVENTORY_START)
    head, tail = html[:start], html[start:]

    rows = list(INVENTORY_ROW.finditer(tail))
    pieces = []
    cursor = 0
    i = 0
    while i < len(rows):
        row = rows[i].group(0)
        j = i + 1
        while (j < len(rows) and rows[j].group(0) == row
               and not tail[rows[j - 1].end():rows[j].start()].strip()):
            j += 1
        pieces.append(tail[cursor:rows[i].start()])
        pieces.append(_with_counter(row, j - i) if j - i > 1 else row)
        cursor = rows[j - 1].end()
        i = j
    pieces.append(tail[cursor:])
    return head + "".join(pieces)


def main_page(html: str, profile: Profile) -> str:
    for action, link in fight_actions(html).items():
        logging.debug(f"Fight action {action} available: {link}")

    if profile.fish_auto:
        report = sub_string(html, "Рыбалка: Лов", "<br>")
        if report:
            logging.debug(f"Fishing report: {report}")

    if profile.fish_auto_wear:
        rods = fishing_rods(html)
        if rods:
            logging.debug(f"Fishing rods in inventory: {len(rods)}")

    html = html.replace(WAIT_BOX_EMPTY, WAIT_BOX_BUSY)

    if profile.do_inv_pack:
        html = pack_inventory(html)

    current = vitals(html)
    if current is not None:
        logging.debug(f"HP {current[0]}, MP {current[1]}")
    return html


def chat_message(html: str, profile: Profile) -> str:
    if profile.chat_keep_game and profile.last_chat_message:
        return html.replace(" id=msg>", f" id=msg>{profile.last_chat_message}")
    return html


def trade_offer(html: str) -> Optional[TradeOffer]:
    if TRADE_RETURN_BUTTON.lower() not in html.lower():
        return None
    price = sub_string(html, " за ", " NV")
    if not price:
        return None
    try:
        value = int(price.strip())
    except ValueError:
        logging.debug(f"Unparseable trade price: {price}")
        return None
    return TradeOffer(
        seller=sub_string(html, "<font color=#cc0000>Продажа предмета от ", " за "),
        item=sub_string(html, "</font><br><br> ", "</b>"),
        level=sub_string(html, "&nbsp;Уровень: <b>", "</b>"),
        price=value,
    )


def trade_page(html: str, profile: Profile) -> str:
    if not profile.torg_active:
        return html
    offer = trade_offer(html)
    if offer is not None:
        logging.info(f"Trade: {offer.item} (level {offer.level}) for {offer.price} NV from {offer.seller}")
    return html


def roulette(body: str, profile: Profile) -> str:
    args = body.split("@")
    if len(args) > 2 and args[0] == "OK":
        logging.info(f"Roulette: {args[1]}")
    return body


# matched against the url path
ENDPOINT_FILTERS = [
    ("startswith", "/main.php", main_page),
    ("startswith", "/ch/msg.php", chat_message),
    ("startswith", "/gameplay/trade.php", trade_page),
    ("startswith", "/gameplay/ajax/roulette_ajax.php", roulette),
]
