"""Tests for the portal session client."""

import pytest

from callbridge.errors import (
    ExportError,
    PortalAuthError,
    PortalUnavailableError,
    ProtocolError,
)
from callbridge.portal.client import parse_workbook
from callbridge.storage.store import EntityKind

from tests.conftest import EMAIL, HEADER, PASSWORD, REPORT, make_workbook

CHAT = 42


class TestLogin:
    @pytest.mark.asyncio
    async def test_fresh_login_posts_form_with_csrf(self, portal_client, fake_portal):
        await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        post = next(r for r in fake_portal.requests if r.method == "POST")
        body = post.content.decode()
        assert "csrf_webcall=tok-123" in body
        assert "username=ops%40example.com" in body
        assert post.headers["Referer"] == "https://portal.example.com/login"
        assert post.headers["Origin"] == "https://portal.example.com"

    @pytest.mark.asyncio
    async def test_second_login_reuses_cookies(self, portal_client, fake_portal):
        await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        assert fake_portal.login_posts == 1
        await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        assert fake_portal.login_posts == 1

    @pytest.mark.asyncio
    async def test_cookies_persisted_after_success(self, portal_client, store):
        await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        stored = await store.get(EntityKind.PORTAL_COOKIES, CHAT)
        names = [c["name"] for c in stored["cookies"]]
        assert names == ["portal_session"]
        assert stored["cookies"][0]["path"] == "/"

    @pytest.mark.asyncio
    async def test_cookies_are_per_chat(self, portal_client, fake_portal):
        await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        await portal_client.ensure_logged_in(CHAT + 1, EMAIL, PASSWORD)
        assert fake_portal.login_posts == 2

    @pytest.mark.asyncio
    async def test_wrong_password_raises_auth_error(self, portal_client, store):
        with pytest.raises(PortalAuthError):
            await portal_client.ensure_logged_in(CHAT, EMAIL, "wrong")
        assert await store.get(EntityKind.PORTAL_COOKIES, CHAT) is None

    @pytest.mark.asyncio
    async def test_missing_csrf_is_protocol_error(self, portal_client, fake_portal):
        fake_portal.include_csrf = False
        with pytest.raises(ProtocolError, match="CSRF"):
            await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        assert fake_portal.login_posts == 0

    @pytest.mark.asyncio
    async def test_login_page_error_is_protocol_error(self, portal_client, fake_portal):
        fake_portal.login_page_status = 503
        with pytest.raises(ProtocolError, match="503"):
            await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)

    @pytest.mark.asyncio
    async def test_unexpected_post_status_is_protocol_error(self, portal_client, fake_portal):
        fake_portal.login_post_status = 500
        with pytest.raises(ProtocolError):
            await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)

    @pytest.mark.asyncio
    async def test_plain_200_without_marker_counts_as_success(self, portal_client, fake_portal, store):
        fake_portal.login_post_status = 200
        await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        assert await store.get(EntityKind.PORTAL_COOKIES, CHAT) is not None

    @pytest.mark.asyncio
    async def test_empty_credentials_rejected_before_network(self, portal_client, fake_portal):
        with pytest.raises(ValueError):
            await portal_client.ensure_logged_in(CHAT, "", PASSWORD)
        with pytest.raises(ValueError):
            await portal_client.ensure_logged_in(CHAT, EMAIL, "")
        assert fake_portal.requests == []

    @pytest.mark.asyncio
    async def test_unreachable_portal(self, portal_client, fake_portal):
        fake_portal.unreachable = True
        with pytest.raises(PortalUnavailableError) as info:
            await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        assert isinstance(info.value, ExportError)

    @pytest.mark.asyncio
    async def test_logout_drops_cookies(self, portal_client, fake_portal, store):
        await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        await portal_client.logout(CHAT)
        assert await store.get(EntityKind.PORTAL_COOKIES, CHAT) is None
        await portal_client.ensure_logged_in(CHAT, EMAIL, PASSWORD)
        assert fake_portal.login_posts == 2


class TestDownloadReport:
    @pytest.mark.asyncio
    async def test_returns_parsed_rows(self, portal_client):
        rows = await portal_client.download_report(CHAT, "2025-07-01", EMAIL, PASSWORD)
        assert rows[0] == HEADER
        assert len(rows) == len(REPORT)
        assert rows[1][5] == "Jane Doe"
        assert rows[1][9] == 95

    @pytest.mark.asyncio
    async def test_export_query_is_exact(self, portal_client, fake_portal):
        await portal_client.download_report(CHAT, "2025-07-01", EMAIL, PASSWORD)
        export = fake_portal.exports[0]
        params = dict(export.url.params)
        assert params == {
            "from_date": "2025-07-01",
            "to_date": "2025-07-01",
            "phone": "",
            "status": "0",
            "autodial_id": "",
            "team_id": "0",
        }
        assert export.headers["Accept"] == "application/vnd.ms-excel"

    @pytest.mark.asyncio
    async def test_logs_in_before_export(self, portal_client, fake_portal):
        await portal_client.download_report(CHAT, "2025-07-01", EMAIL, PASSWORD)
        paths = [r.url.path for r in fake_portal.requests]
        assert paths.index("/login") < paths.index("/api/export/voice")

    @pytest.mark.asyncio
    async def test_warm_session_skips_login(self, portal_client, fake_portal):
        await portal_client.download_report(CHAT, "2025-07-01", EMAIL, PASSWORD)
        await portal_client.download_report(CHAT, "2025-06-30", EMAIL, PASSWORD)
        assert fake_portal.login_posts == 1
        assert len(fake_portal.exports) == 2

    @pytest.mark.asyncio
    async def test_non_200_export_raises_with_status(self, portal_client, fake_portal):
        fake_portal.export_status = 500
        with pytest.raises(ExportError, match="500"):
            await portal_client.download_report(CHAT, "2025-07-01", EMAIL, PASSWORD)

    @pytest.mark.asyncio
    async def test_unreadable_payload(self, portal_client, fake_portal):
        fake_portal.report_bytes = b"<html>not a workbook</html>"
        with pytest.raises(ExportError, match="workbook"):
            await portal_client.download_report(CHAT, "2025-07-01", EMAIL, PASSWORD)

    @pytest.mark.asyncio
    async def test_bad_credentials_propagate(self, portal_client):
        with pytest.raises(PortalAuthError):
            await portal_client.download_report(CHAT, "2025-07-01", EMAIL, "nope")


class TestParseWorkbook:
    def test_first_row_is_header(self):
        rows = parse_workbook(make_workbook([["a", "b"], [1, 2]]))
        assert rows == [["a", "b"], [1, 2]]

    def test_garbage_raises_export_error(self):
        with pytest.raises(ExportError):
            parse_workbook(b"\x00\x01garbage")
