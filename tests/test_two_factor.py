"""Two-factor enrollment, step-up verification and gate decisions."""

import pyotp
import pytest

from communityhub.service.errors import ConflictError, NotFoundError, ValidationError
from communityhub.service.monitoring import RecordingMonitoringSink
from communityhub.service.routing import RouteTable
from communityhub.service.sessions import SessionManager
from communityhub.service.two_factor import (
    TwoFactorGate,
    TwoFactorService,
    generate_backup_codes,
    hash_backup_code,
    normalize_code,
)


@pytest.fixture
def sessions(memory_store, security_config):
    return SessionManager(memory_store, security_config, RecordingMonitoringSink())


@pytest.fixture
def service(memory_store, sessions, security_config, fake_clock):
    return TwoFactorService(memory_store, sessions, security_config, clock=fake_clock)


@pytest.fixture
def gate(memory_store, security_config):
    return TwoFactorGate(memory_store, RouteTable(), security_config)


async def _user_with_session(store, sessions, email="alice@example.com"):
    user = await store.create_user(email, handle=email.split("@")[0])
    session = await sessions.create_session(user.id, user_agent="Mozilla/5.0 (X11; Linux x86_64)")
    return user, session


def _wrong(code: str) -> str:
    return str((int(code) + 500_000) % 1_000_000).zfill(6)


async def _enroll(service, store, sessions, clock):
    user, session = await _user_with_session(store, sessions)
    setup = await service.setup(user.id, session.id, "alice@example.com")
    await service.enable(user.id, session.id, pyotp.TOTP(setup.secret).at(clock()))
    return user, session, setup


def test_code_helpers():
    assert normalize_code(" ab12-cd34 ") == "AB12CD34"
    assert hash_backup_code("ab12-cd34") == hash_backup_code("AB12CD34")
    codes = generate_backup_codes(10)
    assert len(codes) == 10
    assert len(set(codes)) == 10
    assert all(len(code) == 8 and code == code.upper() for code in codes)


async def test_setup_returns_secret_uri_and_backup_codes(service, memory_store, sessions):
    user, session = await _user_with_session(memory_store, sessions)
    setup = await service.setup(user.id, session.id, "alice@example.com")

    assert setup.provisioning_uri.startswith("otpauth://totp/")
    assert "Community%20Hub" in setup.provisioning_uri
    assert len(setup.backup_codes) == 10

    challenge = await memory_store.get_pending_challenge(session.id)
    assert challenge.secret == setup.secret
    assert challenge.is_verified is False
    enrollment = await memory_store.get_enrollment(user.id)
    assert enrollment.enabled is False
    assert (await service.status(user.id)).enabled is False


async def test_secret_is_encrypted_at_rest(service, memory_store, sessions):
    user, session = await _user_with_session(memory_store, sessions)
    setup = await service.setup(user.id, session.id)
    assert memory_store.enrollments[user.id].secret != setup.secret


async def test_enable_requires_valid_code(service, memory_store, sessions, fake_clock):
    user, session = await _user_with_session(memory_store, sessions)
    setup = await service.setup(user.id, session.id)
    good = pyotp.TOTP(setup.secret).at(fake_clock())

    with pytest.raises(ValidationError) as excinfo:
        await service.enable(user.id, session.id, _wrong(good))
    assert excinfo.value.error_code == "invalid_code"
    assert (await service.status(user.id)).enabled is False

    status = await service.enable(user.id, session.id, good)
    assert status.enabled is True
    assert status.backup_codes_remaining == 10
    refreshed = await memory_store.get_session(session.id)
    assert refreshed.two_factor_verified is True


async def test_enable_without_pending_setup(service, memory_store, sessions):
    user, session = await _user_with_session(memory_store, sessions)
    with pytest.raises(NotFoundError):
        await service.enable(user.id, session.id, "123456")


async def test_enable_is_one_shot(service, memory_store, sessions, fake_clock):
    user, session, setup = await _enroll(service, memory_store, sessions, fake_clock)
    with pytest.raises(ConflictError):
        await service.enable(user.id, session.id, pyotp.TOTP(setup.secret).at(fake_clock()))
    with pytest.raises(ConflictError):
        await service.setup(user.id, session.id)


async def test_verify_accepts_totp_within_one_step(service, memory_store, sessions, fake_clock):
    user, _, setup = await _enroll(service, memory_store, sessions, fake_clock)
    other = await sessions.create_session(user.id)
    totp = pyotp.TOTP(setup.secret)

    previous_step = totp.at(fake_clock() - 30)
    result = await service.verify(user.id, other.id, previous_step)
    assert result.success is True
    assert result.method == "totp"
    assert (await memory_store.get_session(other.id)).two_factor_verified is True

    far = await sessions.create_session(user.id)
    stale = totp.at(fake_clock() - 600)
    result = await service.verify(user.id, far.id, stale)
    assert result.success is False
    assert (await memory_store.get_session(far.id)).two_factor_verified is False


async def test_backup_code_is_single_use(service, memory_store, sessions, fake_clock):
    user, _, setup = await _enroll(service, memory_store, sessions, fake_clock)
    code = setup.backup_codes[0]

    first = await sessions.create_session(user.id)
    result = await service.verify(user.id, first.id, code.lower())
    assert result.success is True
    assert result.method == "backup_code"
    assert result.backup_codes_remaining == 9

    second = await sessions.create_session(user.id)
    replay = await service.verify(user.id, second.id, code)
    assert replay.success is False
    assert (await service.status(user.id)).backup_codes_remaining == 9


async def test_verify_without_enrollment(service, memory_store, sessions):
    user, session = await _user_with_session(memory_store, sessions)
    with pytest.raises(ValidationError) as excinfo:
        await service.verify(user.id, session.id, "123456")
    assert excinfo.value.error_code == "two_factor_not_enabled"


async def test_attempts_are_recorded(service, memory_store, sessions, fake_clock):
    user, session, setup = await _enroll(service, memory_store, sessions, fake_clock)
    await service.verify(user.id, session.id, _wrong(pyotp.TOTP(setup.secret).at(fake_clock())))
    events = await memory_store.list_two_factor_events(user.id)
    actions = [event.action for event in events]
    assert actions[-2:] == ["enable", "setup"]
    assert actions[0] == "verify"


async def test_disable_signs_out_other_sessions(service, memory_store, sessions, fake_clock):
    user, session, setup = await _enroll(service, memory_store, sessions, fake_clock)
    await sessions.create_session(user.id)
    await sessions.create_session(user.id)

    totp = pyotp.TOTP(setup.secret)
    with pytest.raises(ValidationError):
        await service.disable(user.id, session.id, _wrong(totp.at(fake_clock())))

    revoked = await service.disable(user.id, session.id, totp.at(fake_clock()))
    assert revoked == 2
    assert (await service.status(user.id)).enabled is False
    remaining = await sessions.list_sessions(user.id)
    assert [sess.id for sess in remaining] == [session.id]


async def test_regenerate_backup_codes_requires_totp(service, memory_store, sessions, fake_clock):
    user, session, setup = await _enroll(service, memory_store, sessions, fake_clock)

    with pytest.raises(ValidationError):
        await service.regenerate_backup_codes(user.id, session.id, setup.backup_codes[0])

    codes = await service.regenerate_backup_codes(
        user.id, session.id, pyotp.TOTP(setup.secret).at(fake_clock())
    )
    assert len(codes) == 10
    assert set(codes).isdisjoint(setup.backup_codes)

    other = await sessions.create_session(user.id)
    old = await service.verify(user.id, other.id, setup.backup_codes[1])
    assert old.success is False
    new = await service.verify(user.id, other.id, codes[0])
    assert new.method == "backup_code"


async def test_marker_is_bound_to_user_and_session(service, memory_store, sessions):
    user, session = await _user_with_session(memory_store, sessions)
    cookie = service.marker_cookie(user.id, session.id)
    assert cookie.name == "2fa_verified"
    assert cookie.httponly is True
    assert service.verify_marker(cookie.value, user.id, session.id)
    assert not service.verify_marker(cookie.value, user.id, "another-session")
    assert not service.verify_marker(cookie.value, "another-user", session.id)
    assert not service.verify_marker(None, user.id, session.id)


async def test_gate_without_enrollment_is_not_required(gate, memory_store, sessions):
    _, session = await _user_with_session(memory_store, sessions)
    check = await gate.check_requirement(session, "/settings")
    assert check.required is False
    assert check.verified is True
    assert check.redirect_target is None


async def test_gate_redirects_unverified_sessions(
    gate, service, memory_store, sessions, fake_clock
):
    user, _, _ = await _enroll(service, memory_store, sessions, fake_clock)
    fresh = await sessions.create_session(user.id)

    check = await gate.check_requirement(fresh, "/settings/security?tab=2fa")
    assert check.required is True
    assert check.verified is False
    assert check.redirect_target == "/auth/2fa-verify?redirect=/settings/security%3Ftab%3D2fa"


async def test_gate_passes_verified_sessions(gate, service, memory_store, sessions, fake_clock):
    _, session, _ = await _enroll(service, memory_store, sessions, fake_clock)
    verified = await memory_store.get_session(session.id)
    check = await gate.check_requirement(verified, "/admin")
    assert check.required is True
    assert check.verified is True


def test_gate_route_decisions(gate):
    assert gate.requires_step_up("/admin/users")
    assert not gate.requires_step_up("/community")
    assert gate.redirect_target("/settings") == "/auth/2fa-verify?redirect=/settings"
