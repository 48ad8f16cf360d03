import base64
import json

import pytest
import requests

from services.errors import ExternalServiceError
from services.llm import OllamaClient
from services.vision import ImageRecipeImporter, encode_data_url, split_data_url


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def _chat_reply(content):
    return FakeResponse({"message": {"role": "assistant", "content": content}})


def test_complete_posts_non_streaming_chat_with_temperature():
    session = FakeSession(_chat_reply(" hello "))
    client = OllamaClient("http://ollama:11434/", "llama3.1:8b", session=session)

    assert client.complete([{"role": "user", "content": "hi"}], temperature=0.0) == "hello"

    url, kwargs = session.posts[0]
    assert url == "http://ollama:11434/api/chat"
    assert kwargs["json"]["stream"] is False
    assert kwargs["json"]["options"] == {"temperature": 0.0}


def test_complete_attaches_images_to_last_message():
    session = FakeSession(_chat_reply("ok"))
    client = OllamaClient(session=session)
    client.complete([{"role": "system", "content": "s"}, {"role": "user", "content": "u"}], images=["QUJD"])

    messages = session.posts[0][1]["json"]["messages"]
    assert "images" not in messages[0]
    assert messages[1]["images"] == ["QUJD"]


def test_complete_wraps_transport_errors():
    client = OllamaClient(session=FakeSession(error=requests.ConnectionError("refused")))
    with pytest.raises(ExternalServiceError) as exc_info:
        client.complete([{"role": "user", "content": "hi"}])
    assert exc_info.value.service == "ollama"


def test_complete_rejects_empty_content():
    client = OllamaClient(session=FakeSession(_chat_reply("   ")))
    with pytest.raises(ExternalServiceError):
        client.complete([{"role": "user", "content": "hi"}])


def test_from_config_picks_vision_model():
    config = {"ollama": {"base_url": "http://gpu:11434", "model": "llama3.1:8b", "vision_model": "llava:13b"}}
    assert OllamaClient.from_config(config, vision=True).model == "llava:13b"
    assert OllamaClient.from_config(config).model == "llama3.1:8b"


def test_data_url_round_trip(tmp_path):
    image = tmp_path / "card.png"
    image.write_bytes(b"\x89PNG fake")

    data_url = encode_data_url(image)
    mime, data = split_data_url(data_url)
    assert mime == "image/png"
    assert base64.b64decode(data) == b"\x89PNG fake"

    with pytest.raises(ExternalServiceError):
        split_data_url("not-a-data-url")


def test_image_importer_maps_model_json():
    reply = json.dumps(
        {
            "name": "Iced Tea",
            "ingredients": [{"name": "black tea", "quantity": 2, "unit": "tablespoons"}],
            "steps": ["Steep tea", "Pour over ice"],
            "prepTime": 5,
        }
    )
    importer = ImageRecipeImporter(OllamaClient(session=FakeSession(_chat_reply(f"```json\n{reply}\n```"))))

    recipe = importer.import_from_image("data:image/png;base64,QUJD")
    assert recipe.name == "Iced Tea"
    assert recipe.ingredients[0].quantity == "2"
    assert recipe.ingredients[0].unit == "tbsp"
    assert recipe.prep_time == 5


def test_image_importer_abstain_returns_empty_recipe():
    reply = json.dumps({"abstain": True, "reason": "insufficient_ocr_evidence"})
    importer = ImageRecipeImporter(OllamaClient(session=FakeSession(_chat_reply(reply))))
    assert importer.import_from_image("data:image/png;base64,QUJD").is_empty()


def test_image_importer_rejects_non_json():
    importer = ImageRecipeImporter(OllamaClient(session=FakeSession(_chat_reply("a photo of tea"))))
    with pytest.raises(ExternalServiceError):
        importer.import_from_image("data:image/png;base64,QUJD")


def test_image_importer_tolerates_scalars_where_lists_belong():
    reply = '{"name": "Tea", "ingredients": 5, "steps": 3, "tags": true, "prepTime": 1e999}'
    importer = ImageRecipeImporter(OllamaClient(session=FakeSession(_chat_reply(reply))))

    recipe = importer.import_from_image("data:image/png;base64,QUJD")
    assert recipe.name == "Tea"
    assert recipe.is_empty()
    assert recipe.tags == []
    assert recipe.prep_time is None


def test_image_importer_wraps_unusable_shapes(monkeypatch):
    def broken(data):
        raise TypeError("unexpected shape")

    monkeypatch.setattr("services.vision.recipe_from_dict", broken)
    importer = ImageRecipeImporter(OllamaClient(session=FakeSession(_chat_reply('{"name": "Tea"}'))))
    with pytest.raises(ExternalServiceError):
        importer.import_from_image("data:image/png;base64,QUJD")
