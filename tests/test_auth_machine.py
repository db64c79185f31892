import httpx
import pytest
import pytest_asyncio

from auth_machine import (GAME_CONTENT_THRESHOLD, AuthAttempt, AuthState, AuthStateMachine, LoginResult,
                          check_login_response, extract_captcha_url, extract_server_warning)
from conftest import identity_cookie, page
from profile_data import Profile, ProfileCipher, ProfileLockedError

GAME_PAGE = '<html><body><canvas id="game"></canvas></body></html>'
CAPTCHA_PAGE = ('<html><form action="game.php">Введите код с картинки: '
                '<img src="/modules/captcha.php?r=1&amp;s=2"></form></html>')
INVALID_PAGE = "<script>show_warn('Неверный логин или пароль')</script>"
PNG = b"\x89PNG\r\n\x1a\n-image-"


@pytest_asyncio.fixture
async def machine(http, repository):
    return AuthStateMachine(http, repository)


def serve_landing(server):
    server.route("GET", "/", page("<html><head></head>login</html>"))


class TestClassification:

    def test_invalid_credentials(self):
        assert check_login_response("... НЕВЕРНЫЙ ЛОГИН ИЛИ ПАРОЛЬ ...") is LoginResult.INVALID_CREDENTIALS

    def test_invalid_credentials_wins_over_captcha(self):
        assert check_login_response("Неверный логин или пароль. Введите код") is LoginResult.INVALID_CREDENTIALS

    def test_captcha(self):
        assert check_login_response(CAPTCHA_PAGE) is LoginResult.CAPTCHA_REQUIRED

    def test_generic_error(self):
        assert check_login_response("<canvas> Error occurred") is LoginResult.ERROR

    def test_game_markers(self):
        assert check_login_response(GAME_PAGE) is LoginResult.SUCCESS

    def test_large_body_without_markers(self):
        assert check_login_response("x" * GAME_CONTENT_THRESHOLD) is LoginResult.SUCCESS

    def test_small_body_without_markers(self):
        assert check_login_response("<html>hello</html>") is LoginResult.ERROR

    def test_captcha_url(self):
        assert extract_captcha_url(CAPTCHA_PAGE, "http://www.neverlands.ru/") == \
            "http://www.neverlands.ru/modules/captcha.php?r=1&s=2"
        assert extract_captcha_url(GAME_PAGE, "http://www.neverlands.ru/") is None

    def test_server_warning(self):
        assert extract_server_warning(INVALID_PAGE) == "Неверный логин или пароль"


class TestAttempt:

    def test_illegal_transition(self):
        attempt = AuthAttempt.create(Profile())
        with pytest.raises(ValueError):
            attempt.advance(AuthState.SUCCESS)

    def test_terminal_states(self):
        attempt = AuthAttempt.create(Profile()).fail("no")
        assert attempt.finished
        assert attempt.result is LoginResult.ERROR


class TestLogin:

    @pytest.mark.asyncio
    async def test_success(self, machine, server, profile, cookie_store, repository):
        serve_landing(server)
        server.route("POST", "/game.php", page(GAME_PAGE, cookies=[identity_cookie(profile.user_nick)]))

        attempt = await machine.login(profile)

        assert attempt.result is LoginResult.SUCCESS
        assert attempt.state is AuthState.SUCCESS
        assert cookie_store.is_authenticated()
        assert cookie_store.current_nick() == profile.user_nick

        post = server.calls("POST", "/game.php")[0]
        assert post.content == b"player_nick=%C3%E5%F0%EE%E9&player_password=%F1%E5%EA%F0%E5%F2"
        assert post.headers["Referer"] == "http://www.neverlands.ru/"

        repository.save_profile.assert_awaited_once()
        saved = repository.save_profile.await_args.args[0]
        assert saved.last_logon is not None
        assert saved.config_last_saved == saved.last_logon

    @pytest.mark.asyncio
    async def test_landing_failure_is_error_without_post(self, machine, server, profile):
        server.route("GET", "/", page("down", status=503))
        attempt = await machine.login(profile)
        assert attempt.result is LoginResult.ERROR
        assert server.calls("POST", "/game.php") == []

    @pytest.mark.asyncio
    async def test_http_error_on_post(self, machine, server, profile):
        serve_landing(server)
        server.route("POST", "/game.php", page("oops", status=500))
        attempt = await machine.login(profile)
        assert attempt.result is LoginResult.ERROR
        assert "500" in attempt.message

    @pytest.mark.asyncio
    async def test_invalid_credentials(self, machine, server, profile, repository):
        serve_landing(server)
        server.route("POST", "/game.php", page(INVALID_PAGE))
        attempt = await machine.login(profile)
        assert attempt.result is LoginResult.INVALID_CREDENTIALS
        assert attempt.message == "Неверный логин или пароль"
        repository.save_profile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_incomplete_profile(self, machine, server):
        attempt = await machine.login(Profile(user_nick="Герой"))
        assert attempt.result is LoginResult.ERROR
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_encrypted_profile_must_be_unlocked(self, machine, profile):
        with pytest.raises(ProfileLockedError):
            await machine.login(ProfileCipher.seal(profile, "pass"))

    @pytest.mark.asyncio
    async def test_unlocked_profile_logs_in(self, machine, server, profile):
        serve_landing(server)
        server.route("POST", "/game.php", page(GAME_PAGE, cookies=[identity_cookie(profile.user_nick)]))
        unlocked = ProfileCipher.unlock(ProfileCipher.seal(profile, "pass"), "pass")
        attempt = await machine.login(unlocked)
        assert attempt.result is LoginResult.SUCCESS


class TestCaptcha:

    @pytest.mark.asyncio
    async def test_captcha_round_trip(self, machine, server, profile, cookie_store):
        serve_landing(server)
        server.route("POST", "/game.php",
                     page(CAPTCHA_PAGE),
                     page(GAME_PAGE, cookies=[identity_cookie(profile.user_nick)]))
        server.route("GET", "/modules/captcha.php", lambda r: httpx.Response(200, content=PNG))

        attempt = await machine.login(profile)

        assert attempt.result is LoginResult.CAPTCHA_REQUIRED
        assert attempt.captcha.image == PNG
        assert attempt.captcha.profile is profile
        assert not cookie_store.is_authenticated()

        attempt = await machine.submit_captcha(attempt, "1234")

        assert attempt.result is LoginResult.SUCCESS
        assert attempt.captcha is None
        assert cookie_store.is_authenticated()
        assert server.calls("POST", "/game.php")[-1].content.endswith(b"&captcha=1234")

    @pytest.mark.asyncio
    async def test_wrong_code_repeats_challenge(self, machine, server, profile):
        serve_landing(server)
        server.route("POST", "/game.php", page(CAPTCHA_PAGE))
        server.route("GET", "/modules/captcha.php", lambda r: httpx.Response(200, content=PNG))

        attempt = await machine.login(profile)
        attempt = await machine.submit_captcha(attempt, "0000")

        assert attempt.result is LoginResult.CAPTCHA_REQUIRED
        assert attempt.state is AuthState.CAPTCHA_REQUIRED
        assert attempt.captcha.image == PNG

    @pytest.mark.asyncio
    async def test_refresh(self, machine, server, profile):
        serve_landing(server)
        server.route("POST", "/game.php", page(CAPTCHA_PAGE))
        server.route("GET", "/modules/captcha.php",
                     lambda r: httpx.Response(200, content=b"first"),
                     lambda r: httpx.Response(200, content=b"second"))

        attempt = await machine.login(profile)
        attempt = await machine.refresh_captcha(attempt)

        assert attempt.captcha.image == b"second"
        assert attempt.state is AuthState.CAPTCHA_REQUIRED

    @pytest.mark.asyncio
    async def test_missing_image_is_error(self, machine, server, profile):
        serve_landing(server)
        server.route("POST", "/game.php", page(CAPTCHA_PAGE))
        attempt = await machine.login(profile)
        assert attempt.result is LoginResult.ERROR
        assert attempt.captcha is None

    @pytest.mark.asyncio
    async def test_submit_without_challenge(self, machine, profile):
        with pytest.raises(ValueError):
            await machine.submit_captcha(AuthAttempt.create(profile), "1234")


class TestFlashPassword:

    @pytest.mark.asyncio
    async def test_flash_password_sent(self, machine, server, profile):
        flash_profile = Profile(user_nick=profile.user_nick, user_password=profile.user_password,
                                user_password_flash="flash")
        serve_landing(server)
        server.route("POST", "/game.php",
                     page('<object flashvars="plid=42"></object> game',
                          cookies=[identity_cookie(profile.user_nick)]),
                     page(GAME_PAGE))

        attempt = await machine.login(flash_profile)

        assert attempt.result is LoginResult.SUCCESS
        assert server.calls("POST", "/game.php")[-1].content == b"flcheck=flash&nid=42"

    @pytest.mark.asyncio
    async def test_flash_password_rejected(self, machine, server, profile):
        flash_profile = Profile(user_nick=profile.user_nick, user_password=profile.user_password,
                                user_password_flash="wrong")
        serve_landing(server)
        server.route("POST", "/game.php",
                     page('<object flashvars="plid=42"></object> game'),
                     page("<script>show_warn('Неверный флеш-пароль')</script> error"))

        attempt = await machine.login(flash_profile)

        assert attempt.result is LoginResult.ERROR
        assert attempt.message == "Неверный флеш-пароль"
