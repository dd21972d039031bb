"""Tests for AuthorizationResolver: guardian links, windows, weekdays and denial precedence."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import TUESDAY, UTC_TZ
from schoolpickup.core.clock import js_weekday
from schoolpickup.services.authorization_resolver import AuthorizationResolver
from schoolpickup.services.outcomes import DenialReason


@pytest.fixture
def resolver(session) -> AuthorizationResolver:
    return AuthorizationResolver(session, UTC_TZ)


class TestWeekdayConvention:
    def test_sunday_is_zero(self) -> None:
        assert js_weekday(date(2025, 10, 19)) == 0

    def test_tuesday_is_two(self) -> None:
        assert js_weekday(TUESDAY) == 2

    def test_saturday_is_six(self) -> None:
        assert js_weekday(date(2025, 10, 25)) == 6


class TestResolve:
    def test_guardian_is_always_permitted(self, resolver, school) -> None:
        result = resolver.resolve(school["guardian"].id, school["student"].id, TUESDAY)
        assert result.permitted
        assert result.via_guardian_link

    def test_no_relationship(self, resolver, school) -> None:
        result = resolver.resolve(school["outsider"].id, school["student"].id, TUESDAY)
        assert not result.permitted
        assert result.reason == DenialReason.NO_RELATIONSHIP

    def test_active_authorization_in_window(self, resolver, factory, school) -> None:
        auth = factory.authorization(school["student"], school["guardian"], school["family"], days=[1, 2, 3])
        result = resolver.resolve(school["family"].id, school["student"].id, TUESDAY)
        assert result.permitted
        assert result.authorization_id == auth.id

    def test_day_not_allowed_names_the_day(self, resolver, factory, school) -> None:
        """Monday/Wednesday-only authorization used on a Tuesday."""
        factory.authorization(school["student"], school["guardian"], school["family"], days=[1, 3])
        result = resolver.resolve(school["family"].id, school["student"].id, TUESDAY)
        assert not result.permitted
        assert result.reason == DenialReason.DAY_NOT_ALLOWED
        assert "Tuesday" in result.message

    def test_expired_window(self, resolver, factory, school) -> None:
        factory.authorization(
            school["student"], school["guardian"], school["family"],
            start=date(2025, 9, 1), end=date(2025, 9, 30),
        )
        result = resolver.resolve(school["family"].id, school["student"].id, TUESDAY)
        assert result.reason == DenialReason.AUTHORIZATION_EXPIRED
        assert "2025-09-30" in result.message

    def test_window_not_started_reports_expired_with_start(self, resolver, factory, school) -> None:
        factory.authorization(
            school["student"], school["guardian"], school["family"],
            start=date(2025, 11, 1), end=date(2025, 11, 30),
        )
        result = resolver.resolve(school["family"].id, school["student"].id, TUESDAY)
        assert result.reason == DenialReason.AUTHORIZATION_EXPIRED
        assert "starts on 2025-11-01" in result.message

    def test_inactive_authorization(self, resolver, factory, school) -> None:
        factory.authorization(school["student"], school["guardian"], school["family"], is_active=False)
        result = resolver.resolve(school["family"].id, school["student"].id, TUESDAY)
        assert result.reason == DenialReason.AUTHORIZATION_INACTIVE

    def test_window_is_inclusive_on_both_ends(self, resolver, factory, school) -> None:
        factory.authorization(
            school["student"], school["guardian"], school["family"],
            start=date(2025, 10, 21), end=date(2025, 10, 21),
        )
        start_of_day = datetime(2025, 10, 21, 0, 0, tzinfo=timezone.utc)
        end_of_day = datetime(2025, 10, 21, 23, 59, tzinfo=timezone.utc)
        assert resolver.resolve(school["family"].id, school["student"].id, start_of_day).permitted
        assert resolver.resolve(school["family"].id, school["student"].id, end_of_day).permitted

    def test_any_matching_overlap_permits(self, resolver, factory, school) -> None:
        factory.authorization(school["student"], school["guardian"], school["family"], days=[1])
        factory.authorization(school["student"], school["guardian"], school["family"], days=[2])
        assert resolver.resolve(school["family"].id, school["student"].id, TUESDAY).permitted

    def test_day_not_allowed_outranks_expired(self, resolver, factory, school) -> None:
        factory.authorization(
            school["student"], school["guardian"], school["family"],
            start=date(2025, 9, 1), end=date(2025, 9, 30),
        )
        factory.authorization(school["student"], school["guardian"], school["family"], days=[5])
        result = resolver.resolve(school["family"].id, school["student"].id, TUESDAY)
        assert result.reason == DenialReason.DAY_NOT_ALLOWED

    def test_inactive_rows_ignored_when_an_active_row_exists(self, resolver, factory, school) -> None:
        factory.authorization(school["student"], school["guardian"], school["family"], is_active=False)
        factory.authorization(
            school["student"], school["guardian"], school["family"],
            start=date(2025, 9, 1), end=date(2025, 9, 30),
        )
        result = resolver.resolve(school["family"].id, school["student"].id, TUESDAY)
        assert result.reason == DenialReason.AUTHORIZATION_EXPIRED

    def test_school_timezone_decides_the_date(self, session, factory, school) -> None:
        """01:00 UTC Wednesday is still Tuesday evening in Los Angeles."""
        factory.authorization(school["student"], school["guardian"], school["family"], days=[2])
        resolver = AuthorizationResolver(session, ZoneInfo("America/Los_Angeles"))
        late = datetime(2025, 10, 22, 1, 0, tzinfo=timezone.utc)
        assert resolver.resolve(school["family"].id, school["student"].id, late).permitted

    def test_resolve_does_not_write(self, resolver, session, school) -> None:
        resolver.resolve(school["outsider"].id, school["student"].id, TUESDAY)
        assert not session.new
        assert not session.dirty

    def test_unknown_party_or_student(self, resolver, school) -> None:
        unknown_party = resolver.resolve(uuid.uuid4(), school["student"].id, TUESDAY)
        unknown_student = resolver.resolve(school["guardian"].id, uuid.uuid4(), TUESDAY)

        assert not unknown_party.permitted and not unknown_party.found
        assert not unknown_student.permitted and not unknown_student.found
        assert unknown_student.reason is None


class TestPermittedStudents:
    def test_own_and_authorized_students(self, resolver, factory, school) -> None:
        other_guardian = factory.parent("Olive Other")
        sibling = factory.student("Bo", "Other", guardians=(other_guardian,))
        factory.authorization(sibling, other_guardian, school["guardian"], days=[2])

        students = resolver.permitted_students(school["guardian"].id, TUESDAY)

        assert students == {school["student"].id, sibling.id}

    def test_weekday_filter_applies(self, resolver, factory, school) -> None:
        factory.authorization(school["student"], school["guardian"], school["family"], days=[4])
        assert resolver.permitted_students(school["family"].id, TUESDAY) == set()


class TestAuthorizedParentsOn:
    def test_lists_valid_authorizations_for_a_class(self, resolver, factory, school) -> None:
        factory.authorization(school["student"], school["guardian"], school["family"], days=[2])
        factory.authorization(school["student"], school["guardian"], school["outsider"], days=[3])
        other_class = factory.school_class("Tulips")
        elsewhere = factory.student("Cy", "Elsewhere", school_class=other_class, guardians=(school["admin"],))
        factory.authorization(elsewhere, school["admin"], school["family"], days=[2])

        results = resolver.authorized_parents_on(TUESDAY.date(), class_id=school["class"].id)

        assert [(r.parent.id, r.student.id) for r in results] == [(school["family"].id, school["student"].id)]
