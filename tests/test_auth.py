import pytest

from selfcast.auth import (
    Identity,
    TokenSigner,
    authorize_project,
    authorize_revalidation,
)
from selfcast.errors import AuthenticationError, Unauthorized, ValidationError


def test_admin_may_touch_anything(admin):
    authorize_project(admin, "acme")
    authorize_revalidation(admin, "/anything/at/all")


def test_client_limited_to_own_project(owner):
    authorize_project(owner, "acme")
    authorize_revalidation(owner, "/acme")
    authorize_revalidation(owner, "/acme/about")
    with pytest.raises(Unauthorized):
        authorize_project(owner, "other")
    with pytest.raises(Unauthorized):
        authorize_revalidation(owner, "/other")


def test_revalidation_matches_whole_segments():
    ann = Identity(user_id="u", role="client", project_id="ann")
    with pytest.raises(Unauthorized):
        authorize_revalidation(ann, "/anna")


def test_revalidation_is_owned_by_first_segment(owner):
    with pytest.raises(Unauthorized):
        authorize_revalidation(owner, "/other/acme")


def test_client_without_project_is_rejected():
    orphan = Identity(user_id="u", role="client")
    with pytest.raises(Unauthorized):
        authorize_revalidation(orphan, "/acme")


def test_token_round_trip(owner):
    signer = TokenSigner("s3cret")
    token = signer.issue(owner)
    assert signer.verify(token) == owner


def test_tampered_or_foreign_tokens_are_rejected(owner):
    token = TokenSigner("s3cret").issue(owner)
    with pytest.raises(AuthenticationError):
        TokenSigner("other-secret").verify(token)
    with pytest.raises(AuthenticationError):
        TokenSigner("s3cret").verify(token[:-2] + "xx")


def test_expired_tokens_are_rejected(owner, monkeypatch):
    signer = TokenSigner("s3cret", max_age=60)
    token = signer.issue(owner)
    real_loads = signer._serializer.loads
    monkeypatch.setattr(
        signer._serializer, "loads", lambda t, max_age=None: real_loads(t, max_age=-1)
    )
    with pytest.raises(AuthenticationError, match="expired"):
        signer.verify(token)


def test_issue_rejects_unknown_role():
    with pytest.raises(ValidationError):
        TokenSigner("s3cret").issue(Identity(user_id="u", role="root"))


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        TokenSigner("")


def test_identity_from_bearer_and_cookie(owner):
    signer = TokenSigner("s3cret")
    token = signer.issue(owner)
    assert signer.identity_from_headers({"Authorization": f"Bearer {token}"}) == owner
    assert signer.identity_from_headers({"Cookie": f"theme=dark; token={token}"}) == owner


def test_missing_credentials():
    signer = TokenSigner("s3cret")
    with pytest.raises(AuthenticationError):
        signer.identity_from_headers({})
    with pytest.raises(AuthenticationError):
        signer.identity_from_headers({"Authorization": "Basic abc"})


def test_claims_must_carry_role_and_user():
    with pytest.raises(AuthenticationError):
        Identity.from_claims({"userId": "u", "role": "superuser"})
    with pytest.raises(AuthenticationError):
        Identity.from_claims({"role": "admin"})
