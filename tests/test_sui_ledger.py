"""
SuiLedgerClient against a stub JSON-RPC fullnode.

The stub serves canned results per method and can be told to fail the next
N requests with an HTTP status, to exercise retry and fail-closed paths.
"""

import base64
import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import base58
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from paywall_gateway.config import ContractIdentifiers
from paywall_gateway.crypto import SuiKeypair, transaction_digest
from paywall_gateway.errors import (
    PW_E_LEDGER_UNAVAILABLE,
    PW_E_PAYMENT_REJECTED,
    PW_E_RESOURCE_NOT_FOUND,
    PW_E_UNAUTHORIZED,
    PaywallError,
)
from paywall_gateway.ledger import PaymentProof, SuiLedgerClient
from paywall_gateway.models import RequestArtifact, ResourceDescriptor
from paywall_gateway.signing import KeypairSigner

PACKAGE = "0x" + "01" * 32
REGISTRY = "0x" + "04" * 32
OUTER_TABLE = "0x" + "a1" * 32
INNER_TABLE = "0x" + "a2" * 32
ENTRY = "0x" + "e1" * 32
TOKEN = "0x" + "70" * 32
RECEIVER = "0x" + "99" * 32


class _RpcHandler(BaseHTTPRequestHandler):
    routes = {}
    calls = []
    fail_statuses = []

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        req = json.loads(self.rfile.read(length) or b"{}")
        _RpcHandler.calls.append((req["method"], req["params"]))

        if _RpcHandler.fail_statuses:
            status = _RpcHandler.fail_statuses.pop(0)
            self.send_response(status)
            self.end_headers()
            return

        handler = _RpcHandler.routes.get(req["method"])
        if handler is None:
            body = {"jsonrpc": "2.0", "id": req["id"], "error": {"code": -32601, "message": "method not found"}}
        else:
            body = {"jsonrpc": "2.0", "id": req["id"], "result": handler(req["params"])}
        data = json.dumps(body).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def rpc_server():
    _RpcHandler.routes = {}
    _RpcHandler.calls = []
    _RpcHandler.fail_statuses = []
    httpd = HTTPServer(("127.0.0.1", 0), _RpcHandler)
    host, port = httpd.server_address
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


@pytest.fixture
def contract():
    return ContractIdentifiers(
        package_id=PACKAGE,
        treasury_id="0x" + "02" * 32,
        pass_counter_id="0x" + "03" * 32,
        registry_id=REGISTRY,
    )


@pytest.fixture
def client(rpc_server, contract):
    return SuiLedgerClient(rpc_server, contract, timeout_seconds=2, max_attempts=3, backoff_seconds=0)


@pytest.fixture
def owner():
    return KeypairSigner(SuiKeypair.from_seed(bytes.fromhex("61" * 32)))


def _methods():
    return [m for m, _ in _RpcHandler.calls]


def _entry_object():
    return {"data": {
        "objectId": ENTRY,
        "version": "12",
        "type": f"{PACKAGE}::registry::ResourceEntry",
        "owner": {"Shared": {"initial_shared_version": 7}},
        "content": {"dataType": "moveObject", "fields": {
            "domain": "example.com",
            "resource": "/premium",
            "walrus_cid": "blob-abc",
            "seal_policy": "0xaa",
            "price": "500000000",
            "receiver": RECEIVER,
            "max_uses": "0",
            "validity_duration": "0",
            "active": True,
            "owner": RECEIVER,
            "created_at": "1700000000000",
        }},
    }}


def _token_object(owner_address, package=PACKAGE, remaining="3"):
    return {"data": {
        "objectId": TOKEN,
        "version": "5",
        "digest": base58.b58encode(b"\x11" * 32).decode("ascii"),
        "type": f"{package}::paywall::AccessPass",
        "owner": {"AddressOwner": owner_address},
        "content": {"dataType": "moveObject", "fields": {
            "id": {"id": TOKEN},
            "owner": owner_address,
            "domain": "example.com",
            "resource": list(b"/premium"),
            "remaining": remaining,
            "expiry": "0",
            "nonce": list(b"abcd"),
            "price_paid": "500000000",
        }},
    }}


def _registry_routes(objects):
    def get_object(params):
        return objects.get(params[0], {"error": {"code": "notExists"}})

    def dynamic_field(params):
        parent, key = params[0], params[1]["value"]
        if parent == OUTER_TABLE and key == "example.com":
            value = {"type": "0x2::table::Table", "fields": {"id": {"id": INNER_TABLE}, "size": "1"}}
        elif parent == INNER_TABLE and key == "/premium":
            value = ENTRY
        else:
            return {"error": {"code": "dynamicFieldNotFound"}}
        return {"data": {"content": {"fields": {"name": key, "value": value}}}}

    return {"sui_getObject": get_object, "suix_getDynamicFieldObject": dynamic_field}


class TestReads:
    def test_fetch_token(self, client, owner):
        _RpcHandler.routes = {"sui_getObject": lambda p: _token_object(owner.address)}
        token = client.fetch_token(TOKEN)
        assert token.owner == owner.address
        assert token.resource_path == "/premium"
        assert token.remaining_uses == 3
        assert token.nonce == "abcd"

    def test_fetch_token_rejects_foreign_package(self, client, owner):
        other = "0x" + "0f" * 32
        _RpcHandler.routes = {"sui_getObject": lambda p: _token_object(owner.address, package=other)}
        assert client.fetch_token(TOKEN) is None

    def test_fetch_token_absent(self, client):
        _RpcHandler.routes = {"sui_getObject": lambda p: {"error": {"code": "notExists"}}}
        assert client.fetch_token(TOKEN) is None

    def test_fetch_token_malformed_id_skips_rpc(self, client):
        assert client.fetch_token("not-an-id") is None
        assert _RpcHandler.calls == []

    def test_lookup_via_fast_path(self, rpc_server, contract):
        _RpcHandler.routes = {"sui_getObject": lambda p: _entry_object()}
        client = SuiLedgerClient(rpc_server, contract, resource_entries={"example.com/premium": ENTRY},
                                 backoff_seconds=0)
        resource = client.lookup_resource("example.com", "/premium/")
        assert resource.entry_id == ENTRY
        assert resource.price == "0.5"
        assert resource.content_locator == "blob-abc"
        assert _methods() == ["sui_getObject"]

    def test_lookup_via_registry(self, client):
        registry = {"data": {"content": {"fields": {
            "resources": {"type": "0x2::table::Table", "fields": {"id": {"id": OUTER_TABLE}, "size": "1"}},
        }}}}
        _RpcHandler.routes = _registry_routes({REGISTRY: registry, ENTRY: _entry_object()})
        resource = client.lookup_resource("example.com", "/premium")
        assert resource.entry_id == ENTRY
        assert resource.receiver_address == RECEIVER
        assert "suix_getDynamicFieldObject" in _methods()

    def test_lookup_unregistered(self, client):
        registry = {"data": {"content": {"fields": {
            "resources": {"fields": {"id": {"id": OUTER_TABLE}}},
        }}}}
        _RpcHandler.routes = _registry_routes({REGISTRY: registry})
        with pytest.raises(PaywallError) as ei:
            client.lookup_resource("example.com", "/missing")
        assert ei.value.code == PW_E_RESOURCE_NOT_FOUND
        assert ei.value.http_status == 404

    def test_reads_retry_transient_failures(self, client, owner):
        _RpcHandler.routes = {"sui_getObject": lambda p: _token_object(owner.address)}
        _RpcHandler.fail_statuses = [503, 429]
        assert client.fetch_token(TOKEN) is not None
        assert len(_RpcHandler.calls) == 3

    def test_reads_give_up_after_max_attempts(self, client):
        _RpcHandler.fail_statuses = [503, 503, 503]
        with pytest.raises(PaywallError) as ei:
            client.fetch_token(TOKEN)
        assert ei.value.code == PW_E_LEDGER_UNAVAILABLE
        assert ei.value.retryable
        assert len(_RpcHandler.calls) == 3

    def test_client_errors_not_retried(self, client):
        _RpcHandler.fail_statuses = [400]
        with pytest.raises(PaywallError) as ei:
            client.fetch_token(TOKEN)
        assert ei.value.code == PW_E_LEDGER_UNAVAILABLE
        assert not ei.value.retryable
        assert len(_RpcHandler.calls) == 1

    def test_lookup_during_outage_is_retryable_not_found(self, rpc_server, contract):
        client = SuiLedgerClient(rpc_server, contract, max_attempts=1, backoff_seconds=0)
        _RpcHandler.fail_statuses = [503]
        with pytest.raises(PaywallError) as ei:
            client.lookup_resource("example.com", "/premium")
        assert ei.value.code == PW_E_RESOURCE_NOT_FOUND
        assert ei.value.http_status == 503
        assert ei.value.retryable

    def test_rpc_error_is_not_retryable(self, client):
        with pytest.raises(PaywallError) as ei:
            client.list_payment_objects("0x" + "61" * 32)
        assert ei.value.code == PW_E_LEDGER_UNAVAILABLE
        assert not ei.value.retryable
        assert len(_RpcHandler.calls) == 1

    def test_list_payment_objects_paginates(self, client, owner):
        pages = {
            None: {"data": [{"coinObjectId": "0xc1", "balance": "100"}], "hasNextPage": True, "nextCursor": "p2"},
            "p2": {"data": [{"coinObjectId": "0xc2", "balance": "250"}], "hasNextPage": False, "nextCursor": None},
        }
        _RpcHandler.routes = {"suix_getCoins": lambda p: pages[p[2]]}
        coins = client.list_payment_objects(owner.address)
        assert [(c.object_id, c.value) for c in coins] == [("0xc1", 100), ("0xc2", 250)]
        assert _RpcHandler.calls[0][1][1] == "0x2::sui::SUI"

    def test_object_refs(self, client, owner):
        objects = {ENTRY: _entry_object(), TOKEN: _token_object(owner.address)}
        _RpcHandler.routes = {"sui_getObject": lambda p: objects[p[0]]}
        shared = client.object_ref(ENTRY)
        assert shared.shared and shared.initial_shared_version == 7
        owned = client.object_ref(TOKEN)
        assert not owned.shared
        assert owned.version == 5
        assert owned.digest == b"\x11" * 32

    def test_find_tokens_from_purchase_events(self, client, owner):
        stranger = "0x" + "5a" * 32

        def event(digest, who, resource="/premium/", kind="PassPurchased"):
            return {
                "id": {"txDigest": digest, "eventSeq": "0"},
                "type": f"{PACKAGE}::paywall::{kind}",
                "parsedJson": {"owner": who, "domain": "example.com", "resource": resource, "pass_id": "1"},
            }

        events = {"data": [
            event("tx-other-kind", owner.address, kind="PassConsumed"),
            event("tx-stranger", stranger),
            event("tx-other-path", owner.address, resource="/free"),
            event("tx-mine", owner.address),
        ], "hasNextPage": False}
        created = {"objectChanges": [
            {"type": "mutated", "objectType": "0x2::coin::Coin<0x2::sui::SUI>", "objectId": "0xc1"},
            {"type": "created", "objectType": f"{PACKAGE}::paywall::AccessPass", "objectId": TOKEN},
        ]}
        _RpcHandler.routes = {
            "suix_queryEvents": lambda p: events,
            "sui_getTransactionBlock": lambda p: created,
            "sui_getObject": lambda p: _token_object(owner.address),
        }

        found = client.find_tokens(owner.address, "example.com", "/premium")
        assert [t.token_id for t in found] == [TOKEN]
        query = _RpcHandler.calls[0][1]
        assert query[0] == {"MoveModule": {"package": PACKAGE, "module": "paywall"}}
        assert query[3] is True
        tx_lookups = [p for m, p in _RpcHandler.calls if m == "sui_getTransactionBlock"]
        assert [p[0] for p in tx_lookups] == ["tx-mine"]


class TestWrites:
    TX_BYTES = b"\x00unsigned-transaction-bytes"

    def _resource(self):
        return ResourceDescriptor(
            domain="example.com",
            resource_path="/premium",
            content_locator="blob-abc",
            decryption_policy_id="0xaa",
            price="0.5",
            receiver_address=RECEIVER,
            entry_id=ENTRY,
        )

    def _build(self, params):
        return {"txBytes": base64.b64encode(self.TX_BYTES).decode("ascii")}

    def test_purchase_signs_and_executes_once(self, client, owner):
        executed = {"result": {
            "digest": "D1",
            "effects": {"status": {"status": "success"}},
            "objectChanges": [
                {"type": "mutated", "objectType": "0x2::coin::Coin<0x2::sui::SUI>", "objectId": "0xc1"},
                {"type": "created", "objectType": f"{PACKAGE}::paywall::AccessPass", "objectId": TOKEN},
            ],
        }}
        _RpcHandler.routes = {
            "unsafe_moveCall": self._build,
            "sui_executeTransactionBlock": lambda p: executed["result"],
        }
        token_id = client.purchase_token(self._resource(), PaymentProof(owner, "0xc1"), 10, 0, "nonce-1")
        assert token_id == TOKEN
        assert _methods() == ["unsafe_moveCall", "sui_executeTransactionBlock"]

        build_params = _RpcHandler.calls[0][1]
        assert build_params[0] == owner.address
        assert build_params[2:4] == ["paywall", "purchase_pass"]
        args = build_params[5]
        assert args[0] == "0xc1"
        assert bytes(args[1]) == b"example.com"
        assert bytes(args[2]) == b"/premium"
        assert args[3:5] == ["10", "0"]
        assert bytes(args[5]) == b"nonce-1"

        exec_params = _RpcHandler.calls[1][1]
        assert exec_params[3] == "WaitForLocalExecution"
        sig = base64.b64decode(exec_params[1][0])
        assert sig[0] == 0 and sig[65:] == owner.public_key_bytes
        Ed25519PublicKey.from_public_bytes(owner.public_key_bytes).verify(
            sig[1:65], transaction_digest(self.TX_BYTES)
        )

    def test_aborted_purchase_is_payment_rejected(self, client, owner):
        _RpcHandler.routes = {
            "unsafe_moveCall": self._build,
            "sui_executeTransactionBlock": lambda p: {
                "effects": {"status": {"status": "failure", "error": "MoveAbort(EInsufficientPayment)"}},
            },
        }
        with pytest.raises(PaywallError) as ei:
            client.purchase_token(self._resource(), PaymentProof(owner, "0xc1"), 10, 0, "nonce-2")
        assert ei.value.code == PW_E_PAYMENT_REJECTED

    def test_submission_is_never_retried(self, client, owner):
        def fail_on_execute(params):
            _RpcHandler.fail_statuses.append(503)
            return self._build(params)

        _RpcHandler.routes = {"unsafe_moveCall": fail_on_execute}
        with pytest.raises(PaywallError) as ei:
            client.purchase_token(self._resource(), PaymentProof(owner, "0xc1"), 10, 0, "nonce-3")
        assert ei.value.code == PW_E_LEDGER_UNAVAILABLE
        assert _methods() == ["unsafe_moveCall", "sui_executeTransactionBlock"]

    def test_consume_requires_owner_key(self, client, owner):
        _RpcHandler.routes = {"sui_getObject": lambda p: _token_object(owner.address)}
        artifact = RequestArtifact(TOKEN, owner.address, "sig", "1")
        with pytest.raises(PaywallError) as ei:
            client.consume_token(TOKEN, artifact)
        assert ei.value.code == PW_E_UNAUTHORIZED

        stranger = KeypairSigner(SuiKeypair.from_seed(bytes.fromhex("62" * 32)))
        with pytest.raises(PaywallError) as ei:
            client.consume_token(TOKEN, stranger)
        assert ei.value.code == PW_E_UNAUTHORIZED
        assert "unsafe_moveCall" not in _methods()

    def test_consume_by_owner(self, client, owner):
        _RpcHandler.routes = {
            "sui_getObject": lambda p: _token_object(owner.address, remaining="2"),
            "unsafe_moveCall": self._build,
            "sui_executeTransactionBlock": lambda p: {"effects": {"status": {"status": "success"}}},
        }
        assert client.consume_token(TOKEN, owner) == 1
        move_call = [p for m, p in _RpcHandler.calls if m == "unsafe_moveCall"][0]
        assert move_call[3] == "consume_pass"
        assert move_call[5] == [TOKEN]

    def test_split_payment_object(self, client, owner):
        _RpcHandler.routes = {
            "unsafe_paySui": self._build,
            "sui_executeTransactionBlock": lambda p: {
                "effects": {"status": {"status": "success"}},
                "objectChanges": [
                    {"type": "created", "objectType": "0x2::coin::Coin<0x2::sui::SUI>", "objectId": "0xnew"},
                ],
            },
        }
        assert client.split_payment_object(owner, "0xc1", 500) == "0xnew"
        pay = _RpcHandler.calls[0][1]
        assert pay[1] == ["0xc1"] and pay[2] == [owner.address] and pay[3] == ["500"]
