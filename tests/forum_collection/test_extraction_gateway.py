import json
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, APITimeoutError, AuthenticationError, InternalServerError, NotFoundError, RateLimitError

from src.functions.forum_collection.core.contracts.extraction import Chunk, OutcomeKind
from src.functions.forum_collection.core.errors import ExtractionResponseError
from src.functions.forum_collection.core.extraction import OpenAIExtractionGateway, parse_mentions
from src.functions.forum_collection.core.extraction.prompts import build_mention_extraction_prompt
from src.shared.utils.config_validator import ConfigurationError

from tests.forum_collection.fixtures import BASE_TIME, chain_comments, make_post

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/responses")


def _chunk(extract_from_post=True):
    post = make_post("p1")
    return Chunk(
        chunk_id="chunk_c0_0",
        root_id="c0_0",
        post=post,
        comments=tuple(chain_comments(post.id, [2])),
        extract_from_post=extract_from_post,
    )


def _status_error(cls, status, headers=None):
    response = httpx.Response(status, request=REQUEST, headers=headers or {})
    return cls(f"HTTP {status}", response=response, body=None)


class _FakeResponses:
    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return SimpleNamespace(output_text=answer)


def _gateway(*answers):
    responses = _FakeResponses(answers)
    client = SimpleNamespace(responses=responses)
    return OpenAIExtractionGateway(model="test-model", client=client), responses


def _payload(*mentions):
    return json.dumps({"mentions": list(mentions)})


def test_parse_mentions_keeps_only_chunk_members():
    text = _payload(
        {"source_id": "c0_0", "restaurant_name": "Joe's Pizza", "dish_name": "Plain Slice", "attributes": ["Crispy", " "]},
        {"source_id": "p1", "restaurant_name": "Lucali", "categories": ["Pizza", "pizza"]},
        {"source_id": "elsewhere", "restaurant_name": "Di Fara"},
        {"source_id": "c0_1", "restaurant_name": "   "},
        "not a mention",
    )

    mentions = parse_mentions(text, _chunk())

    assert [(m.source_id, m.restaurant_key, m.dish_key) for m in mentions] == [
        ("c0_0", "joes pizza", "plain slice"),
        ("p1", "lucali", ""),
    ]
    assert mentions[0].attributes == ("crispy",)
    assert mentions[0].source_type == "comment"
    assert mentions[0].mentioned_at == BASE_TIME
    assert mentions[1].categories == ("pizza",)
    assert mentions[1].source_type == "post"


def test_parse_mentions_ignores_post_when_not_extracting_from_it():
    text = _payload({"source_id": "p1", "restaurant_name": "Lucali"})

    assert parse_mentions(text, _chunk(extract_from_post=False)) == []


@pytest.mark.parametrize("text", ["not json", json.dumps(["a"]), json.dumps({"mentions": "nope"})])
def test_parse_mentions_rejects_malformed_output(text):
    with pytest.raises(ExtractionResponseError):
        parse_mentions(text, _chunk())


def test_extract_success():
    gateway, responses = _gateway(_payload({"source_id": "c0_1", "restaurant_name": "Katz's Delicatessen"}))

    result = gateway.extract(_chunk())

    assert result.succeeded
    assert result.chunk_size == 2
    assert [m.restaurant_key for m in result.mentions] == ["katzs delicatessen"]
    request = responses.calls[0]
    assert request["model"] == "test-model"
    assert request["text"] == {"format": {"type": "json_object"}}
    assert '"id": "c0_1"' in request["input"]


def test_rate_limit_is_transient_with_retry_after():
    gateway, _ = _gateway(_status_error(RateLimitError, 429, {"retry-after": "7"}))

    result = gateway.extract(_chunk())

    assert result.outcome.kind is OutcomeKind.TRANSIENT
    assert result.outcome.category == "rate_limit"
    assert result.outcome.retry_after == 7.0


@pytest.mark.parametrize(
    "error, kind, category",
    [
        (_status_error(AuthenticationError, 401), OutcomeKind.PERMANENT, "auth_error"),
        (_status_error(NotFoundError, 404), OutcomeKind.PERMANENT, "source_api_error"),
        (_status_error(InternalServerError, 503), OutcomeKind.TRANSIENT, "source_api_error"),
        (APITimeoutError(request=REQUEST), OutcomeKind.TRANSIENT, "network_error"),
        (APIConnectionError(request=REQUEST), OutcomeKind.TRANSIENT, "network_error"),
    ],
)
def test_client_errors_become_typed_outcomes(error, kind, category):
    gateway, _ = _gateway(error)

    result = gateway.extract(_chunk())

    assert result.outcome.kind is kind
    assert result.outcome.category == category
    assert result.mentions == ()


def test_unparseable_output_is_transient():
    gateway, _ = _gateway("I could not find any restaurants.")

    result = gateway.extract(_chunk())

    assert result.outcome.kind is OutcomeKind.TRANSIENT


def test_missing_api_key_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ConfigurationError):
        OpenAIExtractionGateway()


def test_prompt_lists_post_and_comments():
    prompt = build_mention_extraction_prompt(_chunk())

    assert 'online community "FoodNYC"' in prompt
    assert '"id": "p1"' in prompt
    assert '"id": "c0_0"' in prompt
    assert '"extract_from_post": true' in prompt
