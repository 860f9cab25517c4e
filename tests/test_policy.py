import pytest

from authgate.errors import PolicyDeniedError
from authgate.policy import AccessPolicy, labels_allowed
from authgate.storage import SessionRecord

ALLOWED = frozenset({"builder", "patron"})


def session(labels, authenticated=True) -> SessionRecord:
    return SessionRecord(
        session_id="sid",
        email="a@x.com",
        display_name="A",
        labels=list(labels),
        authenticated=authenticated,
        created_at=0,
        expires_at=10,
    )


@pytest.fixture
def policy():
    return AccessPolicy(ALLOWED, "https://members.example")


class TestEvaluate:
    @pytest.mark.parametrize(
        "labels, expected",
        [
            (["builder"], True),
            (["free-member", "patron"], True),
            (["free-member"], False),
            ([], False),
        ],
    )
    def test_set_intersection(self, policy, labels, expected):
        assert policy.evaluate(session(labels)) is expected

    def test_no_session(self, policy):
        assert policy.evaluate(None) is False

    def test_unauthenticated_session(self, policy):
        assert policy.evaluate(session(["builder"], authenticated=False)) is False

    def test_empty_allow_list_denies_everyone(self):
        assert AccessPolicy(frozenset(), "https://m").evaluate(session(["builder"])) is False

    def test_labels_allowed_is_case_sensitive(self):
        assert labels_allowed(["Builder"], ALLOWED) is False


class TestRequire:
    def test_denial_carries_labels_and_redirect(self, policy):
        with pytest.raises(PolicyDeniedError) as exc_info:
            policy.require(["free-member"])

        body = exc_info.value.to_dict()
        assert exc_info.value.status_code == 403
        assert body["error"] == "Access denied"
        assert body["userLabels"] == ["free-member"]
        assert body["redirectUrl"] == "https://members.example"

    def test_allowed_labels_pass(self, policy):
        policy.require(["patron"])
