"""Tests for dispute routes."""

import uuid
from unittest.mock import patch

import pytest

from conftest import headers_for


@pytest.fixture
def open_dispute(client, escrow_factory, buyer):
    """Factory: an escrow at ``status`` with an open dispute raised by the buyer."""

    def _open(status: str = "shipped", reason: str = "not received") -> tuple[dict, dict]:
        escrow = escrow_factory(status)
        response = client.post(
            f"/api/escrow/{escrow['id']}/dispute",
            json={"reason": reason},
            headers=headers_for(buyer),
        )
        assert response.status_code == 201, response.text
        return escrow, response.json()["dispute"]

    return _open


class TestResolveDispute:
    """Tests for POST /api/disputes/{id}/resolve."""

    def test_favor_buyer_leaves_escrow_then_refund(
        self, client, fake_db, open_dispute, admin, auth_headers
    ):
        """Test a buyer-favoured ruling keeps the escrow so it can be refunded."""
        escrow, dispute = open_dispute("shipped")

        response = client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "favor_buyer", "note": "Courier lost the parcel"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dispute"]["status"] == "resolved"
        assert data["dispute"]["decision"] == "favor_buyer"
        assert data["escrow"]["status"] == "shipped"
        assert "payout" not in data

        response = client.post(
            f"/api/admin/escrows/{escrow['id']}/refund", headers=auth_headers(admin)
        )

        assert response.status_code == 200
        assert response.json()["escrow"]["status"] == "cancelled"
        assert not fake_db.rows("payouts", escrow_id=escrow["id"])

    def test_favor_seller_releases_with_payout(
        self, client, fake_db, open_dispute, admin, auth_headers
    ):
        escrow, dispute = open_dispute("shipped")

        response = client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "favor_seller"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dispute"]["status"] == "resolved"
        assert data["escrow"]["status"] == "released"
        assert data["payout"]["status"] == "pending"
        assert len(fake_db.rows("payouts", escrow_id=escrow["id"])) == 1

        audit = fake_db.rows("audit_logs", entity_id=escrow["id"], action="dispute_release")
        assert audit[0]["metadata"]["dispute_id"] == dispute["id"]

    def test_favor_seller_requires_verified_seller(
        self, client, fake_db, open_dispute, seller, admin, auth_headers
    ):
        """Test a failed KYC check leaves the dispute open."""
        escrow, dispute = open_dispute("funded")
        fake_db.rows("users", id=seller["id"])[0]["kyc_status"] = "rejected"

        response = client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "favor_seller"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 403
        assert fake_db.rows("disputes", id=dispute["id"])[0]["status"] == "open"
        assert fake_db.rows("escrow_transactions", id=escrow["id"])[0]["status"] == "funded"

    def test_rejected_unfreezes_escrow(self, client, open_dispute, buyer, admin, auth_headers):
        escrow, dispute = open_dispute("shipped")

        response = client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "rejected"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200
        assert response.json()["dispute"]["status"] == "rejected"

        response = client.post(f"/api/escrow/{escrow['id']}/confirm", headers=auth_headers(buyer))

        assert response.status_code == 200
        assert response.json()["escrow"]["status"] == "confirmed"

    def test_cannot_resolve_twice(self, client, fake_db, open_dispute, admin, auth_headers):
        _, dispute = open_dispute("shipped")
        client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "favor_buyer"},
            headers=auth_headers(admin),
        )

        response = client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "favor_seller"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 400
        assert response.json()["current_status"] == "resolved"
        assert len(fake_db.rows("audit_logs", entity_id=dispute["id"], action="resolve_dispute")) == 1

    def test_resolve_on_stale_read(self, client, fake_db, open_dispute, admin, auth_headers):
        """Test a ruling that read the dispute before another admin closed it."""
        _, dispute = open_dispute("shipped")
        stale = dict(fake_db.rows("disputes", id=dispute["id"])[0])
        client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "favor_buyer"},
            headers=auth_headers(admin),
        )

        with patch("escao.routes.disputes.get_dispute", return_value=stale):
            response = client.post(
                f"/api/disputes/{dispute['id']}/resolve",
                json={"decision": "favor_seller"},
                headers=auth_headers(admin),
            )

        assert response.status_code == 400
        assert response.json()["current_status"] == "resolved"
        assert fake_db.rows("disputes", id=dispute["id"])[0]["decision"] == "favor_buyer"
        assert len(fake_db.rows("audit_logs", entity_id=dispute["id"], action="resolve_dispute")) == 1
        assert not fake_db.rows("payouts", escrow_id=dispute["escrow_id"])

    def test_non_admin_forbidden(self, client, open_dispute, buyer, auth_headers):
        _, dispute = open_dispute("shipped")

        response = client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "favor_buyer"},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 403

    def test_unknown_dispute(self, client, admin, auth_headers):
        response = client.post(
            f"/api/disputes/{uuid.uuid4()}/resolve",
            json={"decision": "favor_buyer"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 404

    def test_malformed_dispute_id(self, client, admin, auth_headers):
        response = client.post(
            "/api/disputes/missing/resolve",
            json={"decision": "favor_buyer"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 400

    def test_invalid_decision(self, client, open_dispute, admin, auth_headers):
        _, dispute = open_dispute("shipped")

        response = client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "split"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 400


class TestEvidence:
    """Tests for POST /api/disputes/{id}/evidence and GET /api/disputes/{id}."""

    def test_party_adds_evidence(self, client, fake_db, open_dispute, seller, auth_headers):
        _, dispute = open_dispute("shipped")

        response = client.post(
            f"/api/disputes/{dispute['id']}/evidence",
            json={"file_url": "https://files.example.com/awb.pdf", "note": "Courier receipt"},
            headers=auth_headers(seller),
        )

        assert response.status_code == 201
        evidence = response.json()["evidence"]
        assert evidence["uploaded_by"] == seller["id"]
        assert fake_db.rows("audit_logs", entity_id=evidence["id"], action="add_evidence")

    def test_outsider_cannot_add_evidence(self, client, open_dispute, make_user, auth_headers):
        _, dispute = open_dispute("shipped")
        outsider = make_user("buyer")

        response = client.post(
            f"/api/disputes/{dispute['id']}/evidence",
            json={"file_url": "https://files.example.com/x.jpg"},
            headers=auth_headers(outsider),
        )

        assert response.status_code == 403

    def test_admin_cannot_add_evidence(self, client, open_dispute, admin, auth_headers):
        _, dispute = open_dispute("shipped")

        response = client.post(
            f"/api/disputes/{dispute['id']}/evidence",
            json={"file_url": "https://files.example.com/x.jpg"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 403

    def test_no_evidence_after_resolution(self, client, open_dispute, buyer, admin, auth_headers):
        _, dispute = open_dispute("shipped")
        client.post(
            f"/api/disputes/{dispute['id']}/resolve",
            json={"decision": "rejected"},
            headers=auth_headers(admin),
        )

        response = client.post(
            f"/api/disputes/{dispute['id']}/evidence",
            json={"file_url": "https://files.example.com/late.jpg"},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 400

    def test_get_dispute_with_evidence(self, client, open_dispute, buyer, seller, auth_headers):
        escrow, dispute = open_dispute("shipped")
        client.post(
            f"/api/disputes/{dispute['id']}/evidence",
            json={"file_url": "https://files.example.com/photo.jpg"},
            headers=auth_headers(buyer),
        )

        response = client.get(f"/api/disputes/{dispute['id']}", headers=auth_headers(seller))

        assert response.status_code == 200
        data = response.json()
        assert data["dispute"]["escrow_id"] == escrow["id"]
        assert data["dispute"]["buyer_email"] == buyer["email"]
        assert len(data["evidence"]) == 1

    def test_outsider_cannot_view(self, client, open_dispute, make_user, auth_headers):
        _, dispute = open_dispute("shipped")
        outsider = make_user("seller", kyc_status="verified")

        response = client.get(f"/api/disputes/{dispute['id']}", headers=auth_headers(outsider))

        assert response.status_code == 403
