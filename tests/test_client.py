"""
Client orchestrator tests: challenge -> purchase -> signed retry, against a
real gateway app served through FastAPI's TestClient.
"""

import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

from paywall_gateway.client import HttpResponse, PaywallClient, TokenCache, signer_lock
from paywall_gateway.config import ContractIdentifiers, GatewayConfig
from paywall_gateway.crypto import SuiKeypair
from paywall_gateway.decryption import InMemoryDecryptionService
from paywall_gateway.errors import (
    PW_E_PAYMENT_REJECTED,
    PW_E_RESOURCE_NOT_FOUND,
    AccessDenied,
    DenialReason,
    PaywallError,
)
from paywall_gateway.ledger import InMemoryLedger
from paywall_gateway.models import CapabilityToken, PaymentChallenge, ResourceDescriptor
from paywall_gateway.server import PaywallGateway, create_app
from paywall_gateway.signing import KeypairSigner
from paywall_gateway.storage import InMemoryBlobStore

NOW = 1_700_000_000_000
PRICE_MIST = 500_000_000
RECEIVER = "0x" + "99" * 32
POLICY = "0xc0ffee"
URL = "http://testserver/premium"


class _AppTransport:
    """Transport that routes requests into an ASGI app and counts them."""

    def __init__(self, app, mutate_challenge=None):
        self.http = TestClient(app)
        self.requests = []
        self.mutate_challenge = mutate_challenge

    def get(self, url, headers):
        self.requests.append(dict(headers))
        r = self.http.get(url, headers=headers)
        body = r.content
        if r.status_code == 402 and self.mutate_challenge is not None:
            body = json.dumps(self.mutate_challenge(r.json())).encode("utf-8")
        return HttpResponse(status=r.status_code, body=body, headers={k.lower(): v for k, v in r.headers.items()})


class _RecordingLedger(InMemoryLedger):
    """Records overlapping splits/purchases and the payment objects spent."""

    def __init__(self):
        super().__init__()
        self._track = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.spent = []

    def _enter(self):
        with self._track:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        time.sleep(0.02)

    def _leave(self):
        with self._track:
            self.in_flight -= 1

    def split_payment_object(self, owner_signer, object_id, amount):
        self._enter()
        try:
            return super().split_payment_object(owner_signer, object_id, amount)
        finally:
            self._leave()

    def purchase_token(self, resource, payment, uses, expiry_ms, nonce):
        self._enter()
        try:
            self.spent.append(payment.payment_object_id)
            return super().purchase_token(resource, payment, uses, expiry_ms, nonce)
        finally:
            self._leave()


class _World:
    def __init__(self, *, consume_after_delivery=True, server_side_decrypt=False, encrypt=False, ledger=None):
        self.contract = ContractIdentifiers(
            package_id="0x" + "01" * 32,
            treasury_id="0x" + "02" * 32,
            pass_counter_id="0x" + "03" * 32,
            registry_id="0x" + "04" * 32,
        )
        config = GatewayConfig(
            domain="testserver",
            contract=self.contract,
            blob_endpoints=[],
            consume_after_delivery=consume_after_delivery,
            server_side_decrypt=server_side_decrypt,
        )
        self.ledger = ledger or InMemoryLedger()
        self.blobs = InMemoryBlobStore()
        self.decryption = InMemoryDecryptionService()
        content = b"the premium article"
        locator = self.blobs.put(self.decryption.encrypt(POLICY, content) if encrypt else content)
        self.resource = self.ledger.register_resource(ResourceDescriptor(
            domain="testserver",
            resource_path="/premium",
            content_locator=locator,
            decryption_policy_id=POLICY,
            price="0.5",
            receiver_address=RECEIVER,
        ))
        self.gateway = PaywallGateway(config, self.ledger, self.blobs, self.decryption, clock=lambda: NOW)
        self.app = create_app(self.gateway)
        self.signer = KeypairSigner(SuiKeypair.generate())

    def client(self, transport=None, clock=lambda: NOW, **kw):
        return PaywallClient(
            self.signer,
            self.ledger,
            transport or _AppTransport(self.app),
            clock=clock,
            contract=self.contract,
            **kw,
        )

    def coins(self):
        return sorted(o.value for o in self.ledger.list_payment_objects(self.signer.address))


@pytest.fixture
def world():
    return _World()


class TestFetch:
    def test_pays_then_retries_with_proof(self, world):
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)
        transport = _AppTransport(world.app)
        result = world.client(transport).fetch(URL)

        assert result.status == 200
        assert result.content == b"the premium article"
        assert result.resource_entry_id == world.resource.entry_id
        assert len(transport.requests) == 2
        assert transport.requests[0] == {}
        assert set(transport.requests[1]) == {"x-pass-id", "x-signer", "x-sig", "x-ts"}

        token = world.ledger.fetch_token(result.token_id)
        # The gateway accounted the use; the client must not consume again.
        assert token.remaining_uses == 9
        assert world.ledger.balances[RECEIVER] == PRICE_MIST
        assert world.coins() == [2 * 10 ** 9 - PRICE_MIST]

    def test_cached_pass_is_reused(self, world):
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)
        client = world.client()
        first = client.fetch(URL)
        second = client.fetch(URL)
        assert first.token_id == second.token_id
        assert world.ledger.balances[RECEIVER] == PRICE_MIST
        assert world.ledger.fetch_token(first.token_id).remaining_uses == 8

    def test_pass_bought_elsewhere_is_discovered(self, world):
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)
        first = world.client().fetch(URL)
        # A fresh client starts with an empty cache for the same signer.
        second = world.client().fetch(URL)
        assert second.token_id == first.token_id
        assert world.ledger.balances[RECEIVER] == PRICE_MIST
        assert world.ledger.fetch_token(first.token_id).remaining_uses == 8

    def test_concurrent_fetches_for_one_signer_pay_once(self):
        world = _World(ledger=_RecordingLedger())
        world.ledger.mint_payment_object(world.signer.address, 5 * 10 ** 9)
        results, errors = [], []

        def fetch():
            try:
                results.append(world.client().fetch(URL))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=fetch) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert [r.status for r in results] == [200, 200]
        assert world.ledger.max_in_flight == 1
        assert len(world.ledger.spent) == len(set(world.ledger.spent)) == 1
        assert results[0].token_id == results[1].token_id
        assert world.ledger.balances[RECEIVER] == PRICE_MIST
        assert world.coins() == [5 * 10 ** 9 - PRICE_MIST]

    def test_exhausted_cached_pass_triggers_new_purchase(self, world):
        world.ledger.mint_payment_object(world.signer.address, 3 * 10 ** 9)
        client = world.client(default_uses=1)
        first = client.fetch(URL)
        second = client.fetch(URL)
        assert first.token_id != second.token_id
        assert world.ledger.balances[RECEIVER] == 2 * PRICE_MIST

    def test_exact_value_object_preferred(self, world):
        world.ledger.mint_payment_object(world.signer.address, 5 * 10 ** 9)
        world.ledger.mint_payment_object(world.signer.address, PRICE_MIST)
        world.client().fetch(URL)
        assert world.coins() == [5 * 10 ** 9]

    def test_insufficient_balance(self, world):
        world.ledger.mint_payment_object(world.signer.address, PRICE_MIST + 5_000_000)
        with pytest.raises(PaywallError) as ei:
            world.client().fetch(URL)
        assert ei.value.code == PW_E_PAYMENT_REJECTED
        assert RECEIVER not in world.ledger.balances

    def test_challenge_receiver_must_match_ledger(self, world):
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)

        def redirect(body):
            return {**body, "receiver": "0x" + "66" * 32}

        client = world.client(_AppTransport(world.app, mutate_challenge=redirect))
        with pytest.raises(PaywallError) as ei:
            client.fetch(URL)
        assert ei.value.code == PW_E_PAYMENT_REJECTED
        assert world.coins() == [2 * 10 ** 9]

    def test_challenge_price_must_match_ledger(self, world):
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)

        def discount(body):
            return {**body, "priceInSmallestUnit": "1"}

        with pytest.raises(PaywallError) as ei:
            world.client(_AppTransport(world.app, mutate_challenge=discount)).fetch(URL)
        assert ei.value.code == PW_E_PAYMENT_REJECTED

    def test_denial_raises_without_retry(self, world):
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)
        transport = _AppTransport(world.app)
        skewed = world.client(transport, clock=lambda: NOW + 10 * 60 * 1000)
        with pytest.raises(AccessDenied) as ei:
            skewed.fetch(URL)
        assert ei.value.reason == DenialReason.BAD_SIGNATURE
        assert len(transport.requests) == 2
        assert skewed.token_cache.get(world.signer.address, "testserver", "/premium") is None

    def test_unknown_resource(self, world):
        with pytest.raises(PaywallError) as ei:
            world.client().fetch("http://testserver/missing")
        assert ei.value.code == PW_E_RESOURCE_NOT_FOUND
        assert ei.value.http_status == 404

    def test_client_consumes_when_gateway_does_not(self):
        world = _World(consume_after_delivery=False)
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)
        result = world.client().fetch(URL)
        assert "x-usage-accounting" not in result.headers
        assert world.ledger.fetch_token(result.token_id).remaining_uses == 9

    def test_consume_can_be_disabled(self):
        world = _World(consume_after_delivery=False)
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)
        result = world.client(consume_after_access=False).fetch(URL)
        assert world.ledger.fetch_token(result.token_id).remaining_uses == 10

    def test_client_side_decryption(self):
        world = _World(encrypt=True)
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)
        result = world.client(decryption=world.decryption).fetch(URL)
        assert result.decrypted
        assert result.content == b"the premium article"

    def test_server_side_decryption_is_not_repeated(self):
        world = _World(encrypt=True, server_side_decrypt=True)
        world.ledger.mint_payment_object(world.signer.address, 2 * 10 ** 9)
        result = world.client(decryption=world.decryption).fetch(URL)
        assert result.decrypted
        assert result.content == b"the premium article"


class TestHelpers:
    def test_token_cache(self):
        cache = TokenCache()
        cache.put("0xAB", "d", "/p", "t1")
        assert cache.get("0xab", "d", "/p") == "t1"
        cache.drop("0xab", "d", "/p")
        assert cache.get("0xab", "d", "/p") is None

    def test_signer_lock_shared_per_address(self):
        assert signer_lock("0xAB") is signer_lock("0xab")
        assert signer_lock("0xab") is not signer_lock("0xcd")

    def test_malformed_challenge(self):
        with pytest.raises(PaywallError):
            PaywallClient.parse_challenge(HttpResponse(status=402, body=b'{"price": "1"}'))

    def test_pass_path_with_trailing_slash_is_usable(self, world):
        token = CapabilityToken(
            token_id="0x" + "0c" * 32,
            owner=world.signer.address,
            domain="testserver",
            resource_path="/premium/",
            remaining_uses=1,
        )

        class _OnePassLedger(InMemoryLedger):
            def find_tokens(self, owner, domain, resource_path):
                return [token]

        challenge = PaymentChallenge(
            price="0.5",
            price_in_smallest_unit=PRICE_MIST,
            receiver_address=RECEIVER,
            contract_identifiers={},
            domain="testserver",
            resource_path="/premium",
            nonce="n",
        )
        client = PaywallClient(world.signer, _OnePassLedger(), _AppTransport(world.app), clock=lambda: NOW)
        assert client.discover_token(challenge) == token.token_id
        assert client.token_cache.get(world.signer.address, "testserver", "/premium") == token.token_id
