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

from profile_data import Profile

JSON_SHIM = "var JSON=JSON||{}; "

SHOP_CALLBACK = "AjaxPost('shop_ajax.php', data, function(xdata) {"
SHOP_CALLBACK_BULK_SELL = (
    "AjaxPost('shop_ajax.php', data, function(xdata){ "
    "var arg1 = window.external.BulkSellOldArg1(); "
    "var arg2 = window.external.BulkSellOldArg2(); "
    "if (arg1 > 0) shop_item_sell(arg1, arg2);"
)


def json_shim(script: str, profile: Profile) -> str:
    # arena and building scripts call JSON.* before the page defines it
    if script.startswith(JSON_SHIM):
        return script
    return JSON_SHIM + script


def player_info_tooltip(script: str, profile: Profile) -> str:
    return script.replace("+alt+", "+window.external.InfoToolTip(arr[0],alt)+")


def clan_sign_spacing(script: str, profile: Profile) -> str:
    return script.replace("'%clan% '", "'%clan%'")


def shop_bulk_sell(script: str, profile: Profile) -> str:
    return script.replace(SHOP_CALLBACK, SHOP_CALLBACK_BULK_SELL)


SCRIPT_FILTERS = [
    ("contains", "/arena", json_shim),
    ("contains", "pinfo_v01.js", player_info_tooltip),
    ("contains", "/js/building", json_shim),
    ("endswith", "/js/pv.js", clan_sign_spacing),
    ("contains", "/js/shop", shop_bulk_sell),
]
