import pytest

from hub_common.exceptions import NetworkFailure
from manifest_svc.rpc import NodeRpcClient, normalize_url


class _StubHttpClient:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    async def post_json(self, url, payload):
        self.requests.append((url, payload))
        return self.responses[payload["method"]]


def test_normalize_url():
    assert normalize_url("node.example:51234") == "https://node.example:51234"
    assert normalize_url("http://localhost:5005") == "http://localhost:5005"


@pytest.mark.asyncio
async def test_fetch_trusted_validator_keys():
    client = _StubHttpClient(
        {"validators": {"result": {"status": "success", "trusted_validator_keys": ["nA", "nB", 7]}}}
    )
    rpc = NodeRpcClient("node.example", client)

    assert await rpc.fetch_trusted_validator_keys() == ["nA", "nB"]
    assert client.requests == [("https://node.example", {"method": "validators"})]


@pytest.mark.asyncio
async def test_fetch_manifest():
    client = _StubHttpClient(
        {"manifest": {"result": {"status": "success", "manifest": "JAAAAAE=", "requested": "nA"}}}
    )
    rpc = NodeRpcClient("https://node.example", client)

    assert await rpc.fetch_manifest("nA") == "JAAAAAE="
    assert client.requests[0][1] == {"method": "manifest", "params": [{"public_key": "nA"}]}


@pytest.mark.asyncio
async def test_fetch_manifest_unknown_key():
    client = _StubHttpClient({"manifest": {"result": {"status": "success", "requested": "nA"}}})

    assert await NodeRpcClient("node.example", client).fetch_manifest("nA") is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        {"result": {"status": "error", "error": "noPermission"}},
        {"error": "bad"},
        ["not", "an", "object"],
        {"result": {"status": "success"}},
    ],
)
async def test_failures_raise_network_failure(response):
    rpc = NodeRpcClient("node.example", _StubHttpClient({"validators": response}))

    with pytest.raises(NetworkFailure):
        await rpc.fetch_trusted_validator_keys()
