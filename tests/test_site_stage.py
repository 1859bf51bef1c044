# tests/test_site_stage.py
"""
Tests for the site-scoped permission grant.

Tests:
- Site URL validation before any session is opened
- Admin endpoint derivation
- Pre-query, grant, in-place level raise and "already exists" fallback
- Verification of the requested level, independent of the grant call's reported status
"""

from unittest.mock import MagicMock

import pytest

from calendar_provisioner.config import VerificationConfig
from calendar_provisioner.errors import SiteAdminError
from calendar_provisioner.models import PermissionLevel, SitePermissionGrant, StepStatus
from calendar_provisioner.site_stage import grant_site_access

from conftest import APP_ID


SITE_URL = "https://contoso.sharepoint.com/sites/events"


@pytest.fixture
def opened():
    return []


@pytest.fixture
def run(site_admin, opened):
    def open_session(admin_url):
        opened.append(admin_url)
        site_admin.admin_url = admin_url
        return site_admin

    def _run(**overrides):
        kwargs = dict(
            app_id=APP_ID,
            display_name="Calendar Event Automation",
            site_url=SITE_URL,
            level=PermissionLevel.WRITE,
            sleep=MagicMock(),
        )
        kwargs.update(overrides)
        return grant_site_access(open_session, **kwargs)

    return _run


def _grant_step(report):
    return next(step for step in report.steps if step.name.startswith("Grant"))


def _verify_step(report):
    return next(step for step in report.steps if step.name == "Verify site permission")


class TestValidation:
    @pytest.mark.parametrize(
        "url",
        [
            "http://contoso.sharepoint.com/sites/events",
            "https://contoso.example.com/sites/events",
            "contoso.sharepoint.com/sites/events",
            "https://sharepoint.com/sites/events",
            "",
        ],
    )
    def test_invalid_url_aborts_before_session(self, run, opened, url):
        report = run(site_url=url)

        assert report.aborted
        assert report.exit_code == 1
        assert opened == []

    def test_admin_endpoint_derived_from_host(self, run, opened):
        report = run()

        assert opened == ["https://contoso-admin.sharepoint.com"]
        assert report.details["admin_url"] == "https://contoso-admin.sharepoint.com"


class TestGrant:
    def test_grants_and_verifies(self, run, site_admin):
        report = run()

        assert report.succeeded
        assert _grant_step(report).status is StepStatus.SUCCEEDED
        assert _verify_step(report).status is StepStatus.SUCCEEDED
        [(app_id, display_name, site_url, level)] = site_admin.grant_calls
        assert (app_id, site_url, level) == (APP_ID, SITE_URL, PermissionLevel.WRITE)
        assert display_name == "Calendar Event Automation"
        assert site_admin.closed

    def test_existing_grant_skips_grant_call(self, run, site_admin):
        site_admin.grants.append(
            SitePermissionGrant(id="p1", app_id=APP_ID, display_name="x", site_url=SITE_URL, roles=("write",))
        )

        report = run()

        assert site_admin.grant_calls == []
        assert _grant_step(report).status is StepStatus.ALREADY_PRESENT

    def test_higher_existing_level_covers_request(self, run, site_admin):
        site_admin.grants.append(
            SitePermissionGrant(
                id="p1", app_id=APP_ID, display_name="x", site_url=SITE_URL, roles=("fullcontrol",)
            )
        )

        report = run(level=PermissionLevel.WRITE)

        assert site_admin.grant_calls == []
        assert site_admin.update_calls == []
        assert _grant_step(report).status is StepStatus.ALREADY_PRESENT

    def test_existing_lower_level_is_raised_in_place(self, run, site_admin):
        site_admin.grants.append(
            SitePermissionGrant(id="p1", app_id=APP_ID, display_name="x", site_url=SITE_URL, roles=("read",))
        )

        report = run(level=PermissionLevel.FULL_CONTROL)

        assert site_admin.grant_calls == []
        assert site_admin.update_calls == [(SITE_URL, "p1", PermissionLevel.FULL_CONTROL)]
        assert _grant_step(report).status is StepStatus.SUCCEEDED
        assert _verify_step(report).status is StepStatus.SUCCEEDED
        assert len(site_admin.grants) == 1

    def test_existing_grant_without_roles_is_not_treated_as_covering(self, run, site_admin):
        site_admin.grants.append(
            SitePermissionGrant(id="p1", app_id=APP_ID, display_name="x", site_url=SITE_URL, roles=())
        )

        report = run(level=PermissionLevel.FULL_CONTROL)

        assert site_admin.update_calls == [(SITE_URL, "p1", PermissionLevel.FULL_CONTROL)]
        assert _grant_step(report).status is StepStatus.SUCCEEDED
        assert site_admin.grants[0].roles == ("fullcontrol",)

    def test_existing_entry_without_id_falls_back_to_grant(self, run, site_admin):
        site_admin.grants.append(
            SitePermissionGrant(id="", app_id=APP_ID, display_name="x", site_url=SITE_URL, roles=("read",))
        )

        report = run(level=PermissionLevel.WRITE)

        assert len(site_admin.grant_calls) == 1
        assert site_admin.update_calls == []
        assert _verify_step(report).status is StepStatus.SUCCEEDED

    def test_already_exists_error_is_success(self, run, site_admin):
        site_admin.grant_error = SiteAdminError(400, "invalidRequest", "The permission already exists.")

        report = run()

        assert _grant_step(report).status is StepStatus.ALREADY_PRESENT
        assert report.succeeded
        # Nothing is visible, so verification still warns.
        assert _verify_step(report).status is StepStatus.WARNING

    def test_already_exists_error_with_visible_grant(self, run, site_admin):
        site_admin.grant_error = SiteAdminError(400, "invalidRequest", "The permission already exists.")
        site_admin.list_site_permissions = MagicMock(
            side_effect=[
                [],
                [
                    SitePermissionGrant(
                        id="p1", app_id=APP_ID, display_name="x", site_url=SITE_URL, roles=("write",)
                    )
                ],
            ]
        )

        report = run()

        assert _verify_step(report).status is StepStatus.SUCCEEDED
        assert report.warnings == []

    def test_other_grant_error_is_reported_not_fatal(self, run, site_admin, errors):
        site_admin.grant_error = errors["site"]

        report = run()

        assert _grant_step(report).status is StepStatus.FAILED
        assert report.aborted is None
        assert report.exit_code == 0
        assert _verify_step(report).status is StepStatus.WARNING
        assert any("manually" in step for step in report.next_steps)

    def test_connect_failure_is_fatal_and_session_closed(self, run, site_admin, errors):
        site_admin.connect_error = errors["auth"]

        report = run()

        assert report.aborted
        assert site_admin.grant_calls == []
        assert site_admin.closed

    def test_pre_query_failure_falls_back_to_grant(self, run, site_admin):
        site_admin.list_site_permissions = MagicMock(
            side_effect=[SiteAdminError(500, "generalException", "boom"), []]
        )

        report = run()

        assert len(site_admin.grant_calls) == 1
        assert _grant_step(report).status is StepStatus.SUCCEEDED


class TestVerification:
    def test_grant_not_visible_is_advisory(self, run, site_admin):
        site_admin.record_grants = False

        report = run()

        assert _grant_step(report).status is StepStatus.SUCCEEDED
        assert _verify_step(report).status is StepStatus.WARNING
        assert report.exit_code == 0

    def test_grant_below_requested_level_warns(self, run, site_admin):
        site_admin.grants.append(
            SitePermissionGrant(id="p1", app_id=APP_ID, display_name="x", site_url=SITE_URL, roles=("read",))
        )
        site_admin.grant_error = SiteAdminError(400, "invalidRequest", "The permission already exists.")

        report = run(level=PermissionLevel.WRITE)

        assert _grant_step(report).status is StepStatus.ALREADY_PRESENT
        verify = _verify_step(report)
        assert verify.status is StepStatus.WARNING
        assert "below the requested Write" in verify.detail
        assert report.warnings
        assert any("holds Write" in step for step in report.next_steps)

    def test_polls_when_configured(self, run, site_admin):
        site_admin.record_grants = False
        sleep = MagicMock()

        run(sleep=sleep, verification=VerificationConfig(attempts=2, delay_seconds=1))

        sleep.assert_called_once_with(1)
