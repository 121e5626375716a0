"""
HTTP surface tests: webhook authentication and parsing, delegation
registration and lookups, match trade history.
"""
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlmodel import select

from copytrade.core.config import settings
from copytrade.core.security import compute_webhook_signature
from copytrade.main import app
from copytrade.models.match import MatchStatus, Participant

from conftest import FOLLOWER_A, LEADER, VENUE

SECRET = "whsec-test"


@pytest_asyncio.fixture
async def client(event_router, delegation_service, match_service, copy_engine):
    app.state.event_router = event_router
    app.state.delegation_service = delegation_service
    app.state.match_service = match_service
    app.state.copy_engine = copy_engine

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def signed(monkeypatch):
    monkeypatch.setattr(settings, "ENVIO_WEBHOOK_SECRET", SECRET)

    def _sign(payload: dict) -> tuple:
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            settings.WEBHOOK_SIGNATURE_HEADER: compute_webhook_signature(SECRET, body),
        }
        return body, headers

    return _sign


MATCH_CREATED = {"eventType": "match_created", "matchId": "1", "creator": LEADER, "duration": 3600}


@pytest.mark.asyncio
class TestWebhookAuth:

    async def test_valid_signature_is_processed(self, client, signed, match_service):
        body, headers = signed(MATCH_CREATED)

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["handled"] is True
        assert (await match_service.get_match("1")).creator == LEADER

    async def test_bad_signature_is_rejected_before_processing(self, client, signed, match_service):
        body, headers = signed(MATCH_CREATED)
        headers[settings.WEBHOOK_SIGNATURE_HEADER] = "0" * 64

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 401
        assert await match_service.get_active_matches_for_leader(LEADER) == []

    async def test_missing_signature_is_rejected(self, client, signed):
        body, headers = signed(MATCH_CREATED)
        headers.pop(settings.WEBHOOK_SIGNATURE_HEADER)

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 401

    async def test_signature_covers_raw_body(self, client, signed):
        body, headers = signed(MATCH_CREATED)

        response = await client.post("/webhooks/envio", content=body + b" ", headers=headers)

        assert response.status_code == 401

    async def test_unsigned_rejected_in_production(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ENVIO_WEBHOOK_SECRET", None)
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")

        response = await client.post("/webhooks/envio", json=MATCH_CREATED)

        assert response.status_code == 401

    async def test_unsigned_accepted_in_development(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ENVIO_WEBHOOK_SECRET", None)
        monkeypatch.setattr(settings, "ENVIRONMENT", "development")

        response = await client.post("/webhooks/envio", json=MATCH_CREATED)

        assert response.status_code == 200


@pytest.mark.asyncio
class TestWebhookPayloads:

    async def test_invalid_json_is_400(self, client, signed):
        _, headers = signed({})
        body = b"{not json"
        headers[settings.WEBHOOK_SIGNATURE_HEADER] = compute_webhook_signature(SECRET, body)

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 400

    async def test_malformed_known_kind_is_400(self, client, signed):
        body, headers = signed({"eventType": "supporter_joined", "matchId": "1"})

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 400

    async def test_non_numeric_amount_is_400(self, client, signed, make_match, match_service):
        await make_match(status=MatchStatus.CREATED, leaders=())
        body, headers = signed({
            "eventType": "monachad_joined", "matchId": "1", "monachad": LEADER, "entryFee": "abc",
        })

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 400
        assert (await match_service.get_match("1")).prize_pool == "0"

    async def test_bad_signed_delegation_is_400_and_join_not_recorded(self, client, signed, session_factory, make_match, match_service):
        await make_match(status=MatchStatus.CREATED)
        body, headers = signed({
            "eventType": "supporter_joined", "matchId": "1", "supporter": FOLLOWER_A,
            "monachad": LEADER, "entryFee": "5", "fundedAmount": "2000",
            "delegationHash": "0x" + "dd" * 32, "signedDelegation": "not-hex",
        })

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 400
        assert (await match_service.get_match("1")).prize_pool == "0"
        async with session_factory() as session:
            joined = (await session.execute(
                select(Participant).where(Participant.address == FOLLOWER_A)
            )).scalars().all()
        assert joined == []

    async def test_unknown_kind_is_acknowledged(self, client, signed):
        body, headers = signed({"eventType": "something_new"})

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["handled"] is False

    async def test_trade_event_reports_per_match_outcome(self, client, signed, make_match, make_delegation):
        await make_match()
        await make_delegation()
        body, headers = signed({
            "eventType": "trade_opened",
            "monachadAddress": LEADER,
            "trade": {"target": VENUE, "value": "0", "data": "0x"},
            "metadata": {"sizeToPortfolioBps": "2500"},
        })

        response = await client.post("/webhooks/envio", content=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["matches"] == [{
            "matchId": "1", "admitted": 1, "recorded": 1, "duplicate": False,
            "transactionHash": "0x" + "ee" * 32,
        }]
        assert data["failures"] == []


@pytest.mark.asyncio
class TestDelegationRoutes:

    def body(self, **overrides) -> dict:
        data = {
            "delegation_hash": "0x" + "d1" * 32,
            "supporter": FOLLOWER_A.upper().replace("0X", "0x"),
            "monachad": LEADER,
            "match_id": "1",
            "amount": 10**18,
            "signed_delegation": "0x" + "ab" * 64,
        }
        data.update(overrides)
        return data

    async def test_register_and_fetch(self, client, make_match):
        await make_match()

        created = await client.post("/delegations", json=self.body())
        fetched = await client.get(f"/delegations/{'0x' + 'd1' * 32}")

        assert created.status_code == 201
        assert created.json()["supporter"] == FOLLOWER_A
        assert created.json()["spending_limit"] == str(10**18)
        assert fetched.status_code == 200
        assert fetched.json()["is_active"] is True

    async def test_register_is_idempotent(self, client, make_match):
        await make_match()

        first = await client.post("/delegations", json=self.body())
        second = await client.post("/delegations", json=self.body())

        assert second.status_code == 201
        assert second.json()["created_at"] == first.json()["created_at"]

    async def test_unknown_match_is_404(self, client):
        response = await client.post("/delegations", json=self.body(match_id="404"))

        assert response.status_code == 404

    async def test_finished_match_is_400(self, client, make_match):
        await make_match(status=MatchStatus.COMPLETED)

        response = await client.post("/delegations", json=self.body())

        assert response.status_code == 400

    async def test_supporter_cap(self, client, make_match):
        await make_match(max_supporters=1)

        await client.post("/delegations", json=self.body())
        response = await client.post("/delegations", json=self.body(
            delegation_hash="0x" + "d2" * 32, supporter="0x" + "2b" * 20,
        ))

        assert response.status_code == 400

    async def test_new_delegation_supersedes_previous(self, client, make_match):
        await make_match(max_supporters=1)

        await client.post("/delegations", json=self.body())
        replacement = await client.post("/delegations", json=self.body(delegation_hash="0x" + "d2" * 32))
        listed = await client.get(f"/delegations/user/{FOLLOWER_A}")

        assert replacement.status_code == 201
        active = {d["delegation_hash"]: d["is_active"] for d in listed.json()}
        assert active == {"0x" + "d1" * 32: False, "0x" + "d2" * 32: True}

    async def test_invalid_address_is_422(self, client):
        response = await client.post("/delegations", json=self.body(supporter="not-an-address"))

        assert response.status_code == 422

    async def test_unknown_delegation_is_404(self, client):
        response = await client.get("/delegations/0xmissing")

        assert response.status_code == 404

    async def test_stats(self, client, make_match, make_delegation):
        await make_match()
        await make_delegation(amount=1000)

        response = await client.get(f"/delegations/stats/{LEADER}", params={"matchId": "1"})

        assert response.status_code == 200
        assert response.json()["totalDelegatedAmount"] == "1000"
        assert response.json()["copyTradesExecuted"] == 0

    async def test_supporter_stats(self, client, make_match, make_delegation):
        await make_match()
        await make_delegation(amount=1000)

        response = await client.get(f"/delegations/supporter-stats/{FOLLOWER_A}")

        assert response.status_code == 200
        assert response.json()["supporter"] == FOLLOWER_A
        assert response.json()["activeDelegations"] == 1
        assert response.json()["totalCopyTrades"] == 0

    async def test_supporter_stats_need_copy_engine(self, client):
        app.state.copy_engine = None

        response = await client.get(f"/delegations/supporter-stats/{FOLLOWER_A}")

        assert response.status_code == 503


@pytest.mark.asyncio
class TestMatchRoutes:

    async def test_trade_history(self, client, signed, make_match, make_delegation):
        await make_match()
        await make_delegation()
        body, headers = signed({
            "eventType": "trade_opened",
            "monachadAddress": LEADER,
            "trade": {"target": VENUE, "data": "0x"},
            "metadata": {"sizeToPortfolioBps": 5000},
        })
        await client.post("/webhooks/envio", content=body, headers=headers)

        response = await client.get("/matches/1/trades")

        assert response.status_code == 200
        [trade] = response.json()
        assert trade["trade_type"] == "FOLLOWER_COPY"
        assert trade["amount_in"] == str(10**18 // 2)

    async def test_unknown_match_is_404(self, client):
        assert (await client.get("/matches/missing/trades")).status_code == 404

    async def test_trader_history_and_stats(self, client, signed, make_match, make_delegation):
        await make_match()
        await make_delegation()
        body, headers = signed({
            "eventType": "trade_opened",
            "monachadAddress": LEADER,
            "trade": {"target": VENUE, "data": "0x"},
            "metadata": {"sizeToPortfolioBps": 5000},
        })
        await client.post("/webhooks/envio", content=body, headers=headers)

        history = await client.get(f"/matches/trader/{FOLLOWER_A}/trades", params={"matchId": "1"})
        stats = await client.get(f"/matches/trader/{FOLLOWER_A}/stats")

        assert history.status_code == 200
        assert [t["amount_in"] for t in history.json()] == [str(10**18 // 2)]
        assert stats.json()["totalTrades"] == 1
        assert stats.json()["totalVolume"] == str(10**18 // 2)

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["services"]["relayer"] == "up"
