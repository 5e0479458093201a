"""HTTP tests for legacy creator subscriptions, email claims and membership status."""

import pytest

from billing_recon.core.auth import AuthenticatedUser, require_auth
from billing_recon.domain.records import LegacySubscriptionRecord, PendingClaimRecord

pytestmark = pytest.mark.integration


def _seed_legacy(store, subscription_id, creator_id, status, user_id, amount=0):
    store.legacy[subscription_id] = LegacySubscriptionRecord(
        id=f"ls_{subscription_id}",
        subscription_id=subscription_id,
        creator_id=creator_id,
        status=status,
        user_id=user_id,
        amount=amount,
    )


@pytest.fixture
def creators(store):
    store.add_creator("cr_1", display_name="Creator One")
    store.add_creator("cr_2", display_name="Creator Two")


class TestClaimByEmail:
    def test_claims_with_token_email(self, auth_client, store, gateway):
        gateway.customers_by_email["user@example.com"] = [{"id": "cus_1"}]
        gateway.customer_subscriptions["cus_1"] = [
            {"id": "sub_l1", "status": "active", "metadata": {"legacyCreatorId": "cr_1"}}
        ]
        _seed_legacy(store, "sub_l1", "cr_1", "active", "guest")

        response = auth_client.post("/api/legacy/claim/by-email")

        assert response.status_code == 200
        assert response.json() == {
            "updatedLegacySubs": 1,
            "reassignedLegacySubs": 1,
            "membershipActivated": False,
        }
        assert store.legacy["sub_l1"].user_id == "user_1"

    def test_body_email_overrides_token(self, auth_client, store):
        store.claims["cs_1"] = PendingClaimRecord(
            session_id="cs_1", email="other@example.com", plan_type="cca_no_fees_60"
        )

        response = auth_client.post("/api/legacy/claim/by-email", json={"email": "Other@Example.com"})

        assert response.status_code == 200
        assert response.json()["membershipActivated"] is True
        assert store.users["user_1"].membership_plan == "cca_no_fees_60"

    def test_no_email_is_rejected(self, app, api_client):
        async def _user_without_email():
            return AuthenticatedUser(user_id="user_1", email=None, claims={"sub": "user_1"})

        app.dependency_overrides[require_auth] = _user_without_email

        response = api_client.post("/api/legacy/claim/by-email")

        assert response.status_code == 400


class TestSubscriptionsAndAccess:
    def test_all_access_member_sees_every_creator(self, auth_client, store, creators):
        store.add_user("user_1", membership_active=True, membership_plan="cca_membership_87")

        response = auth_client.get("/api/legacy/subscriptions")

        assert response.status_code == 200
        subscriptions = response.json()["subscriptions"]
        assert [s["id"] for s in subscriptions] == ["all-access-cr_1", "all-access-cr_2"]
        assert subscriptions[0]["creatorName"] == "Creator One"
        assert subscriptions[0]["synthetic"] is True
        assert subscriptions[0]["subscriptionId"] is None

    def test_real_subscriptions_listed(self, auth_client, store, creators):
        _seed_legacy(store, "sub_l1", "cr_2", "trialing", "user_1", amount=900)

        response = auth_client.get("/api/legacy/subscriptions")

        (subscription,) = response.json()["subscriptions"]
        assert subscription["creatorId"] == "cr_2"
        assert subscription["subscriptionId"] == "sub_l1"
        assert subscription["amount"] == 900

    def test_creator_access(self, auth_client, store):
        _seed_legacy(store, "sub_l1", "cr_1", "active", "user_1")

        assert auth_client.get("/api/legacy/access/cr_1").json() == {"hasAccess": True}
        assert auth_client.get("/api/legacy/access/cr_2").json() == {"hasAccess": False}

    def test_membership_status(self, auth_client, store):
        store.add_user("user_1", membership_active=True, membership_plan="cca_no_fees_60")

        response = auth_client.get("/api/membership/status")

        assert response.status_code == 200
        assert response.json() == {
            "active": True,
            "planType": "cca_no_fees_60",
            "allAccess": False,
            "noFees": True,
            "pendingClaim": False,
        }
