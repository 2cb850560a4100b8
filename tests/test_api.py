import json
import unittest
import uuid
from unittest.mock import MagicMock, patch

import httpx
import openai
from azure.core.exceptions import HttpResponseError
from fastapi.testclient import TestClient

from app import app, KeywordIndex
from fakes import FakeBlobServiceClient

client = TestClient(app)

KEYWORD_TEXT = "=== DESCRIPCIÓN ===\nG1 - Guía de mercado\n=== PALABRAS CLAVE ===\noferta, mercado -> G1\n"


def _completion(content):
    return MagicMock(choices=[MagicMock(message=MagicMock(content=content))])


class TestChatAPI(unittest.TestCase):
    def setUp(self):
        # Patch dependencies
        self.bsc = FakeBlobServiceClient()
        self.chats = self.bsc.get_container_client("chatia")
        self.docs = self.bsc.get_container_client("documents")

        self.patchers = [
            patch('app.azure_blob_service_client', return_value=self.bsc),
            patch('app.keyword_index', KeywordIndex(blob_name="names/key-words.txt", container="chatia")),
            patch('app.RETRIEVAL_MODE', "keywords"),
            patch('app.APP_ENV', "production"),
            patch('app.AZURE_OPENAI_ENDPOINT', None),
        ]
        for p in self.patchers:
            p.start()

        self.patcher_openai = patch('app.openai_client')
        self.mock_openai = self.patcher_openai.start()
        self.create = self.mock_openai.return_value.chat.completions.create
        self.create.return_value = _completion("Respuesta de OPT-IA")

    def tearDown(self):
        self.patcher_openai.stop()
        for p in reversed(self.patchers):
            p.stop()

    def _stored(self, user_id, chat_id):
        return json.loads(self.chats.blobs[f"{user_id}/{chat_id}.json"])

    def test_options_preflight(self):
        response = client.options("/api/chat")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"")
        self.assertEqual(response.headers["access-control-allow-origin"], "*")
        self.assertEqual(response.headers["access-control-allow-methods"], "GET, POST, OPTIONS")
        self.assertEqual(response.headers["access-control-allow-headers"], "Content-Type, x-user-id")
        self.create.assert_not_called()

    def test_first_question_creates_transcript(self):
        response = client.post("/api/chat?chatId=chat1", json={"question": "hola"}, headers={"x-user-id": "ana"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["access-control-allow-origin"], "*")
        data = response.json()
        self.assertEqual(data["response"], "Respuesta de OPT-IA")
        self.assertEqual(data["chatId"], "chat1")
        self.assertNotIn("documents", data)
        self.assertEqual([m["role"] for m in data["history"]], ["user", "assistant"])
        self.assertTrue(data["history"][0]["timestamp"].endswith("Z"))

        self.assertEqual(self._stored("ana", "chat1"), data["history"])

        messages = self.create.call_args.kwargs["messages"]
        self.assertEqual(len(messages), 2)
        self.assertIn("conversación nueva", messages[0]["content"])

    def test_continuation_uses_style_prompt_and_history(self):
        self.chats.blobs["ana/chat1.json"] = json.dumps([
            {"role": "system", "content": "prompt viejo", "timestamp": "t0"},
            {"role": "user", "content": "hola", "timestamp": "t1"},
            {"role": "assistant", "content": "¡Hola!", "timestamp": "t2"},
        ]).encode("utf-8")

        response = client.post(
            "/api/chat?chatId=chat1",
            json={"question": "¿Qué es un VAN?", "style": "technical"},
            headers={"x-user-id": "ana"},
        )

        self.assertEqual(response.status_code, 200)
        messages = self.create.call_args.kwargs["messages"]
        self.assertEqual(messages[0]["content"], "Eres un experto técnico. Proporciona respuestas detalladas con términos precisos.")
        self.assertEqual([m["content"] for m in messages[1:]], ["hola", "¡Hola!", "¿Qué es un VAN?"])

        stored = self._stored("ana", "chat1")
        self.assertEqual(len(stored), 5)
        self.assertEqual(stored[0]["content"], "prompt viejo")
        self.assertEqual(stored[-1]["content"], "Respuesta de OPT-IA")

    def test_default_user_and_generated_chat_id(self):
        response = client.post("/api/chat", json={"question": "hola"})

        self.assertEqual(response.status_code, 200)
        chat_id = response.json()["chatId"]
        uuid.UUID(chat_id)
        self.assertIn(f"default-user/{chat_id}.json", self.chats.blobs)

    def test_reply_annotated_with_guides(self):
        self.chats.blobs["names/key-words.txt"] = KEYWORD_TEXT.encode("utf-8")
        self.docs.blobs["G1-Guia de mercado.pdf"] = b"%PDF"

        response = client.post("/api/chat?chatId=chat2", json={"question": "Estudio de OFERTA y demanda"})

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertIn("📚 **Documentos recomendados:**", data["response"])
        self.assertIn("[G1-Guia de mercado.pdf](https://fakeaccount.blob.core.windows.net/documents/G1-Guia de mercado.pdf)", data["response"])
        self.assertEqual(data["documents"], [{
            "keyword": "oferta",
            "guide": "G1",
            "description": "Guía de mercado",
            "url": "https://fakeaccount.blob.core.windows.net/documents/G1-Guia de mercado.pdf",
            "filename": "G1-Guia de mercado.pdf",
        }])
        stored = self._stored("default-user", "chat2")
        self.assertEqual(stored[-1]["documents"], data["documents"])
        self.assertNotIn("documents", stored[0])

    def test_document_lookup_failure_does_not_fail_request(self):
        self.chats.blobs["names/key-words.txt"] = KEYWORD_TEXT.encode("utf-8")
        self.docs.list_error = HttpResponseError(message="AuthorizationPermissionMismatch")

        response = client.post("/api/chat?chatId=chat3", json={"question": "oferta"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["response"], "Respuesta de OPT-IA")

    def test_provider_mode_skips_local_guides(self):
        self.chats.blobs["names/key-words.txt"] = KEYWORD_TEXT.encode("utf-8")
        self.docs.blobs["G1-mercado.pdf"] = b"%PDF"

        with patch('app.RETRIEVAL_MODE', "provider"), patch('app.AZURE_SEARCH_ENDPOINT', "https://s.search.windows.net"), \
                patch('app.AZURE_SEARCH_INDEX', "guias"):
            response = client.post("/api/chat?chatId=chat4", json={"question": "oferta"})

        self.assertEqual(response.status_code, 200)
        self.assertNotIn("documents", response.json())
        data_sources = self.create.call_args.kwargs["extra_body"]["data_sources"]
        self.assertEqual(data_sources[0]["parameters"]["index_name"], "guias")
        self.assertEqual(self.chats.downloads, [])

    def test_missing_question_fails_before_any_call(self):
        with patch('app.azure_blob_service_client') as mock_abs:
            for payload in ({}, {"question": 42}, {"question": "   "}):
                response = client.post("/api/chat?chatId=chat1", json=payload)
                self.assertEqual(response.status_code, 500)
                self.assertIn("question", response.json()["error"])
                self.assertNotIn("stack", response.json())
            mock_abs.assert_not_called()
        self.create.assert_not_called()

    def test_invalid_json_body(self):
        response = client.post("/api/chat", content=b"{not json", headers={"Content-Type": "application/json"})
        self.assertEqual(response.status_code, 500)
        self.assertIn("not valid JSON", response.json()["error"])

    def test_upstream_failure_leaves_transcript_untouched(self):
        self.create.side_effect = openai.InternalServerError(
            "Error code: 500",
            response=httpx.Response(500, request=httpx.Request("POST", "https://example.test")),
            body={"message": "The server had an error"},
        )

        response = client.post("/api/chat?chatId=chat5", json={"question": "hola"})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"], "Error 500: The server had an error")
        self.assertEqual(self.chats.uploads, [])

    def test_load_chat(self):
        stored = [{"role": "user", "content": "hola", "timestamp": "t1"}]
        self.chats.blobs["ana/chat1.json"] = json.dumps(stored).encode("utf-8")

        response = client.post("/api/chat?chatId=chat1", json={"action": "load_chat"}, headers={"x-user-id": "ana"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"history": stored, "chatId": "chat1"})
        self.create.assert_not_called()

    def test_load_chat_returns_entries_as_stored(self):
        stored = [
            {"role": "user", "content": "oferta", "timestamp": None},
            {"role": "assistant", "timestamp": "t2"},
            {"role": "assistant", "content": "ver guía", "timestamp": "t3", "documents": [
                {"keyword": "oferta", "guide": "G1", "description": "Guía de mercado",
                 "url": "https://x/G1.pdf", "filename": "G1.pdf", "size": 3},
            ]},
        ]
        self.chats.blobs["ana/chat1.json"] = json.dumps(stored).encode("utf-8")

        response = client.post("/api/chat?chatId=chat1", json={"action": "load_chat"}, headers={"x-user-id": "ana"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["history"], stored)

    def test_continuation_keeps_earlier_entries_untouched(self):
        stored = [
            {"role": "user", "content": "hola", "timestamp": None},
            {"role": "assistant", "timestamp": "t2"},
            {"role": "assistant", "content": "ver guía", "timestamp": "t3", "documents": [
                {"keyword": "oferta", "guide": "G1", "description": "Guía de mercado",
                 "url": "https://x/G1.pdf", "filename": "G1.pdf", "size": 3},
            ]},
        ]
        self.chats.blobs["ana/chat1.json"] = json.dumps(stored).encode("utf-8")

        response = client.post("/api/chat?chatId=chat1", json={"question": "sigue"}, headers={"x-user-id": "ana"})

        self.assertEqual(response.status_code, 200)
        messages = self.create.call_args.kwargs["messages"]
        self.assertEqual([m["content"] for m in messages[1:]], ["hola", "", "ver guía", "sigue"])
        saved = self._stored("ana", "chat1")
        self.assertEqual(saved[:3], stored)
        self.assertEqual(response.json()["history"][:3], stored)

    def test_question_is_sent_and_stored_as_received(self):
        response = client.post("/api/chat?chatId=chat1", json={"question": "  hola \n"}, headers={"x-user-id": "ana"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.create.call_args.kwargs["messages"][-1]["content"], "  hola \n")
        self.assertEqual(self._stored("ana", "chat1")[0]["content"], "  hola \n")

    def test_existing_chat_is_checked_once_per_question(self):
        self.chats.blobs["ana/chat1.json"] = json.dumps([
            {"role": "user", "content": "hola", "timestamp": "t1"},
        ]).encode("utf-8")

        response = client.post("/api/chat?chatId=chat1", json={"question": "otra"}, headers={"x-user-id": "ana"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.chats.exists_checks.count("ana/chat1.json"), 1)
        self.assertEqual(self.chats.downloads.count("ana/chat1.json"), 1)

    def test_load_chat_via_get(self):
        self.chats.blobs["default-user/chat1.json"] = b"[]"

        response = client.get("/api/chat?chatId=chat1&action=load_chat")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"history": [], "chatId": "chat1"})

    def test_load_chat_not_found(self):
        response = client.post("/api/chat?chatId=missing", json={"action": "load_chat"})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"], "Chat missing not found")
        self.assertEqual(response.headers["access-control-allow-origin"], "*")

    def test_load_chat_requires_chat_id(self):
        for url in ("/api/chat", "/api/chat?chatId=undefined", "/api/chat?chatId=../x"):
            response = client.post(url, json={"action": "load_chat"})
            self.assertEqual(response.status_code, 500)
            self.assertIn("Chat id", response.json()["error"])
        self.assertEqual(self.chats.uploads, [])

    def test_stack_included_in_development(self):
        with patch('app.APP_ENV', "development"):
            response = client.post("/api/chat?chatId=missing", json={"action": "load_chat"})

        self.assertEqual(response.status_code, 500)
        self.assertIn("ChatNotFoundError", response.json()["stack"])

    def test_status(self):
        self.chats.blobs["names/key-words.txt"] = KEYWORD_TEXT.encode("utf-8")

        response = client.get("/api/status")

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["retrieval_mode"], "keywords")
        self.assertEqual(data["keywords"], 2)
        self.assertEqual(data["guides"], 1)

    def test_status_without_storage_configured(self):
        with patch('app.azure_blob_service_client', side_effect=RuntimeError("Azure Storage is not configured")):
            response = client.get("/api/status")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"], "Azure Storage is not configured")
        self.assertEqual(response.headers["access-control-allow-origin"], "*")


if __name__ == "__main__":
    unittest.main()
