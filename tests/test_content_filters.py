import logging

import pytest

from content_filters import endpoints, pages, scripts
from content_filters.dispatcher import ContentFilter, FilterFamily
from content_filters.helpers import parse_js_array, remove_doctype, sub_string
from profile_data import Profile


def cp(text: str) -> bytes:
    return text.encode("cp1251")


@pytest.fixture
def content_filter() -> ContentFilter:
    return ContentFilter()


class TestHelpers:

    def test_sub_string_is_case_insensitive(self):
        assert sub_string("<B>Hello</b> world", "<b>", "</B>") == "Hello"
        assert sub_string("abc", "x", "c") is None
        assert sub_string("abc", "a", "x") is None

    def test_remove_doctype(self):
        html = '<!DOCTYPE html PUBLIC "-//W3C//DTD HTML 4.01//EN"><html></html>'
        assert remove_doctype(html) == "<html></html>"

    def test_parse_js_array(self):
        assert parse_js_array("1,'two',[3,'4']") == [["1"], ["two"], ["3", "4"]]


class TestClassification:

    @pytest.mark.parametrize("url,family", [
        ("http://www.neverlands.ru/js/arena_v3.js", FilterFamily.SCRIPT),
        ("http://www.neverlands.ru/js/pv.js", FilterFamily.SCRIPT),
        ("http://www.neverlands.ru/main.php?get_id=56", FilterFamily.ENDPOINT),
        ("http://www.neverlands.ru/ch/msg.php", FilterFamily.ENDPOINT),
        ("http://www.neverlands.ru/", FilterFamily.PAGE),
        ("http://www.neverlands.ru/index.cgi", FilterFamily.PAGE),
        ("http://www.neverlands.ru/pinfo.cgi?Nick", FilterFamily.PAGE),
        ("http://forum.neverlands.ru/topic.php?id=1", FilterFamily.PAGE),
    ])
    def test_families(self, content_filter, url, family):
        assert content_filter.classify(url)[0] is family

    @pytest.mark.parametrize("url", [
        "http://example.com/main.php",
        "http://www.neverlands.ru/js/unknown.js",
        "http://www.neverlands.ru/images/logo.gif",
    ])
    def test_unmatched(self, content_filter, url):
        assert content_filter.classify(url) is None

    def test_non_game_body_is_the_same_object(self, content_filter):
        body = b"<head></head>"
        assert content_filter.filter("http://example.com/", body) is body


class TestScripts:

    def test_arena_gets_json_shim(self, content_filter):
        out = content_filter.filter("http://www.neverlands.ru/js/arena_v3.js", cp("JSON.parse(x);"))
        assert out == cp("var JSON=JSON||{}; JSON.parse(x);")

    def test_building_gets_json_shim(self, content_filter):
        out = content_filter.filter("http://www.neverlands.ru/js/building_v2.js", cp("f();"))
        assert out.startswith(cp(scripts.JSON_SHIM))

    def test_pinfo_tooltip(self, content_filter):
        out = content_filter.filter("http://www.neverlands.ru/js/pinfo_v01.js", cp("a='<img alt='+alt+'>';"))
        assert out == cp("a='<img alt='+window.external.InfoToolTip(arr[0],alt)+'>';")

    def test_pv_clan_spacing(self, content_filter):
        out = content_filter.filter("http://www.neverlands.ru/js/pv.js", cp("s = '%clan% ' + n;"))
        assert out == cp("s = '%clan%' + n;")

    def test_shop_bulk_sell_hook(self, content_filter):
        out = content_filter.filter("http://www.neverlands.ru/js/shop_v2.js", cp(scripts.SHOP_CALLBACK + " x(); });"))
        assert b"BulkSellOldArg1" in out


class TestEndpoints:

    def test_main_wait_box(self, content_filter):
        out = content_filter.filter("http://www.neverlands.ru/main.php", cp("<div id=wtime></div>"))
        assert out == cp("<div id=wtime><i>Обработка данных...</i></div>")

    def test_fishing_rods(self):
        html = ("<table><tr><td><b>Удочка</b> (1/20)</td></tr>"
                "<tr><td>Зелье</td></tr>"
                "<tr><td>Спиннинг мастера</td></tr></table>")
        assert endpoints.fishing_rods(html) == ["Удочка (1/20)", "Спиннинг мастера"]
        assert endpoints.fishing_rods("<tr><td>Зелье</td></tr>") == []

    def test_fishing_rods_logged_when_auto_wear(self, caplog):
        html = "<table><tr><td>Удочка</td></tr></table>"
        with caplog.at_level(logging.DEBUG):
            assert endpoints.main_page(html, Profile(fish_auto_wear=True)) == html
        assert "Fishing rods in inventory: 1" in caplog.text

        caplog.clear()
        with caplog.at_level(logging.DEBUG):
            endpoints.main_page(html, Profile())
        assert "Fishing rods" not in caplog.text

    def test_chat_message_restored_when_enabled(self, content_filter):
        profile = Profile(chat_keep_game=True, last_chat_message="привет")
        out = content_filter.filter("http://www.neverlands.ru/ch/msg.php", cp('<input id=msg>'), profile)
        assert out == cp("<input id=msg>привет")

    def test_chat_message_untouched_when_disabled(self, content_filter):
        body = cp("<input id=msg>")
        profile = Profile(chat_keep_game=False, last_chat_message="привет")
        assert content_filter.filter("http://www.neverlands.ru/ch/msg.php", body, profile) is body

    def test_fight_actions(self):
        entries = ["'x'"] * 9 + ["[1,2,3,4,5,6]", "[10,'vc',0,7]"]
        html = f"<script>var fight_ty = [{','.join(entries)}];</script>"
        actions = endpoints.fight_actions(html)
        assert actions["rob"].endswith("get_id=17&type=0&p=7&uid=10&s=0&m=0&vcode=vc")
        assert actions["raid"].endswith("get_id=17&type=1&p=2&uid=3&s=4&m=5&vcode=6")

    def test_vitals(self):
        assert endpoints.vitals("ins_hp(1,2,3,4,150,75.5,0)") == (150.0, 75.5)
        assert endpoints.vitals("ins_hp(1,2)") is None

    def test_inventory_packing(self):
        row = "<tr><td>Зелье</td></tr>"
        html = "<table><tr><td><b>Инвентарь</b></font></td></tr>" + row + row + row + "<tr><td>Меч</td></tr></table>"
        packed = endpoints.pack_inventory(html)
        assert packed.count("Зелье") == 1
        assert "Зелье <b>(x3)</b></td>" in packed
        assert "<tr><td>Меч</td></tr>" in packed

    def test_inventory_packing_only_when_enabled(self, content_filter):
        row = "<tr><td>Зелье</td></tr>"
        body = cp("</b></font></td></tr>" + row + row)
        assert content_filter.filter("http://www.neverlands.ru/main.php", body, Profile()) is body
        packed = content_filter.filter("http://www.neverlands.ru/main.php", body, Profile(do_inv_pack=True))
        assert b"(x2)" in packed

    def test_trade_offer(self):
        html = ("<font color=#cc0000>Продажа предмета от Купец за 150 NV</font><br><br> Меч</b>"
                "&nbsp;Уровень: <b>5</b>"
                "<input type=button onclick=\"location='../main.php'\" value=\"Вернуться в игру\">")
        offer = endpoints.trade_offer(html)
        assert offer == endpoints.TradeOffer(seller="Купец", item="Меч", level="5", price=150)

    def test_trade_page_requires_torg_active(self):
        assert endpoints.trade_page("anything", Profile(torg_active=False)) == "anything"


class TestPages:

    def test_index_page(self, content_filter):
        out = content_filter.filter("http://www.neverlands.ru/", cp("<!DOCTYPE html><html><head></head></html>"))
        assert out == cp(f"<html><head>{pages.IE_EDGE_META}</head></html>")

    def test_player_page_drops_doctype(self, content_filter):
        out = content_filter.filter("http://www.neverlands.ru/pbots.cgi?1", cp("<!DOCTYPE html><html></html>"))
        assert out == cp("<html></html>")

    def test_forum_page_mobile_style(self, content_filter):
        out = content_filter.filter("http://forum.neverlands.ru/", cp("<html><head></head></html>"))
        assert cp(pages.FORUM_MOBILE_STYLE + "</head>") in out


class TestFailures:

    def test_failing_transform_returns_original(self, content_filter, monkeypatch):
        def broken(text, profile):
            raise RuntimeError("boom")

        monkeypatch.setattr(content_filter, "classify", lambda url: (FilterFamily.ENDPOINT, broken))
        body = cp("<html></html>")
        assert content_filter.filter("http://www.neverlands.ru/main.php", body) is body
