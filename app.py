import os
import re
import json
import uuid
import pathlib
import logging
import threading
import traceback
from datetime import datetime, timezone
from typing import List, Dict, Any, Literal, Optional, Tuple, Union

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict

from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient

from openai import APIError, APIStatusError, AzureOpenAI, OpenAI

DOTENV_LOADED = load_dotenv()
logger = logging.getLogger("optia_chat")


# -----------------------------
# Configuration (env vars)
# -----------------------------
# Completion provider: Azure OpenAI when an endpoint is configured, plain OpenAI otherwise
AZURE_OPENAI_ENDPOINT = os.getenv("AZURE_OPENAI_ENDPOINT")
AZURE_OPENAI_KEY = os.getenv("AZURE_OPENAI_KEY")
AZURE_OPENAI_DEPLOYMENT = os.getenv("AZURE_OPENAI_DEPLOYMENT")
AZURE_OPENAI_API_VERSION = os.getenv("AZURE_OPENAI_API_VERSION", "2023-05-15")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Generation parameters
CHAT_TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.7"))
CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "800"))
# History turns sent upstream on continuation (0 = whole transcript)
MAX_TURNS = int(os.getenv("CHAT_MAX_TURNS", "0"))

# Azure Storage
AZURE_STORAGE_ACCOUNT = os.getenv("AZURE_STORAGE_ACCOUNT")
AZURE_STORAGE_CONNECTION_STRING = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
CHAT_CONTAINER = os.getenv("CHAT_CONTAINER", "chatia")
DOCUMENTS_CONTAINER = os.getenv("DOCUMENTS_CONTAINER", "documents")
KEYWORDS_BLOB = os.getenv("KEYWORDS_BLOB", "names/key-words.txt")

# Retrieval strategy: "keywords" (local guide links), "provider" (Azure AI Search grounding) or "off"
RETRIEVAL_MODE = os.getenv("RETRIEVAL_MODE", "keywords").strip().lower()
RETRIEVAL_MODES = {"keywords", "provider", "off"}
AZURE_SEARCH_ENDPOINT = os.getenv("AZURE_SEARCH_ENDPOINT")
AZURE_SEARCH_INDEX = os.getenv("AZURE_SEARCH_INDEX")
AZURE_SEARCH_KEY = os.getenv("AZURE_SEARCH_KEY")
AZURE_SEARCH_TOP_N = int(os.getenv("AZURE_SEARCH_TOP_N", "5"))

APP_ENV = os.getenv("APP_ENV", "production").strip().lower()
DEFAULT_USER_ID = "default-user"

SECRET_KEYS = {"AZURE_OPENAI_KEY", "OPENAI_API_KEY", "AZURE_STORAGE_CONNECTION_STRING", "AZURE_SEARCH_KEY"}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, x-user-id",
}

# System instructions
SYSTEM_INSTRUCTIONS_PATH = os.getenv("SYSTEM_INSTRUCTIONS_PATH", "system_instructions.txt")
DEFAULT_SYSTEM_INSTRUCTIONS = """Instrucciones para el Agente OPT-IA

Rol y Personalidad:
Eres OPT-IA, un asistente de consultoría basado en Inteligencia Artificial. Tu propósito es apoyar a estudiantes de Ingeniería Industrial de la Universidad Mayor de San Andrés (UMSA) durante sus prácticas empresariales y pasantías, especialmente en Micro y Pequeñas Empresas (MyPEs) en Bolivia.
Mantén un tono profesional, claro, conciso, didáctico y de apoyo. Sé siempre respetuoso y fomenta el aprendizaje autónomo.

Fuentes de Conocimiento:
Tu conocimiento se deriva exclusivamente del corpus de documentos proporcionado (guías académicas, manuales técnicos especializados, informes anonimizados de prácticas empresariales previas de la "Plataforma Aceleradora de Productividad" de la UMSA). No uses información externa ni inventes respuestas.

Tareas y Comportamiento:
1. Saludo Inicial: Al inicio de una conversación o si el usuario saluda, preséntate brevemente y pregunta en qué puedes ayudar (ej. "¡Hola! 👋 Soy OPT-IA, tu agente virtual... ¿En qué puedo ayudarte hoy? 🚀").
2. Comprensión de la Consulta: Analiza la consulta del estudiante para identificar su intención y los conceptos clave. Si la consulta es ambigua o incompleta, solicita aclaraciones específicas.
3. Búsqueda y Recuperación de Información: Busca la información más relevante dentro de tus documentos fuente para responder a la consulta. Prioriza la información que sea directamente aplicable al contexto de las MyPEs y las prácticas empresariales.
4. Generación de Respuestas: Las respuestas deben ser directas, fáciles de entender, concisas y bien estructuradas. Usa listas numeradas o viñetas. Proporciona ejemplos prácticos y usa las definiciones de glosario si están disponibles.
5. Manejo de Limitaciones (Qué NO Hacer): No proporciones asesoramiento personal, legal, financiero o médico. No generes código o soluciones técnicas. No divulgues información confidencial. No reemplaces la supervisión humana.
6. Cierre y Ofrecimiento de Más Ayuda: Al final de una respuesta, puedes ofrecer continuar la ayuda.

Idioma: Todas las respuestas deben ser en español."""
SYSTEM_INSTRUCTIONS = DEFAULT_SYSTEM_INSTRUCTIONS
SYSTEM_INSTRUCTIONS_SOURCE = "default"
SYSTEM_INSTRUCTIONS_PATH_RESOLVED: Optional[str] = None

GREETING_INSTRUCTIONS = (
    "Esta es una conversación nueva. Comienza con el saludo inicial: preséntate brevemente como OPT-IA "
    "y pregunta en qué puedes ayudar. Si el estudiante ya planteó una consulta, respóndela a continuación."
)

RESPONSE_STYLES = {
    "technical": "Eres un experto técnico. Proporciona respuestas detalladas con términos precisos.",
    "simple": "Responde de manera breve y directa.",
}

MISSING_DESCRIPTION = "Descripción no disponible"


# -----------------------------
# Errors
# -----------------------------
class ChatError(Exception):
    """Base class for faults reported back to the caller as an error response."""


class InputError(ChatError):
    pass


class ChatNotFoundError(ChatError):
    pass


class StorageError(ChatError):
    pass


class UpstreamError(ChatError):
    """The completion (or grounding search) provider did not return a usable answer."""

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        prefix = f"Error {status}" if status is not None else "Error"
        super().__init__(f"{prefix}: {message}")


# -----------------------------
# Models
# -----------------------------
class DocumentLocation(BaseModel):
    url: str
    filename: str


class DocumentRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    keyword: str
    guide: str
    description: str
    url: str
    filename: str


class Message(BaseModel):
    # Unknown keys from older transcripts are kept so load/save does not drop them
    model_config = ConfigDict(extra="allow", frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str = ""
    timestamp: Optional[str] = None
    documents: Optional[List[DocumentRef]] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# -----------------------------
# Helpers
# -----------------------------
def _format_env_value(key: str, value: Any) -> str:
    if value is None:
        return "<unset>"
    if not isinstance(value, str):
        return str(value)
    if key in SECRET_KEYS:
        if value == "":
            return "<unset>"
        return f"****{value[-4:]}" if len(value) > 4 else "****"
    if value == "":
        return "<empty>"
    return value


def _resolve_instructions_path(path_value: str) -> pathlib.Path:
    path = pathlib.Path(path_value)
    if not path.is_absolute():
        path = (pathlib.Path(__file__).resolve().parent / path).resolve()
    return path


def load_system_instructions() -> Tuple[str, str, Optional[str]]:
    if not SYSTEM_INSTRUCTIONS_PATH:
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", None

    path = _resolve_instructions_path(SYSTEM_INSTRUCTIONS_PATH)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("System instructions file not found: %s. Using built-in persona.", path)
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", str(path)
    except OSError as exc:
        logger.warning(
            "Failed to read system instructions file %s: %s. Using built-in persona.",
            path,
            exc,
        )
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", str(path)

    text = text.strip()
    if text == "":
        logger.warning("System instructions file %s is empty; using built-in persona.", path)
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", str(path)
    return text, "file", str(path)


def reload_system_instructions() -> None:
    global SYSTEM_INSTRUCTIONS, SYSTEM_INSTRUCTIONS_SOURCE, SYSTEM_INSTRUCTIONS_PATH_RESOLVED
    (
        SYSTEM_INSTRUCTIONS,
        SYSTEM_INSTRUCTIONS_SOURCE,
        SYSTEM_INSTRUCTIONS_PATH_RESOLVED,
    ) = load_system_instructions()


def log_env_config() -> None:
    values = {
        "AZURE_OPENAI_ENDPOINT": AZURE_OPENAI_ENDPOINT,
        "AZURE_OPENAI_KEY": AZURE_OPENAI_KEY,
        "AZURE_OPENAI_DEPLOYMENT": AZURE_OPENAI_DEPLOYMENT,
        "AZURE_OPENAI_API_VERSION": AZURE_OPENAI_API_VERSION,
        "OPENAI_API_KEY": OPENAI_API_KEY,
        "OPENAI_MODEL": OPENAI_MODEL,
        "CHAT_TEMPERATURE": CHAT_TEMPERATURE,
        "CHAT_MAX_TOKENS": CHAT_MAX_TOKENS,
        "CHAT_MAX_TURNS": MAX_TURNS,
        "AZURE_STORAGE_ACCOUNT": AZURE_STORAGE_ACCOUNT,
        "AZURE_STORAGE_CONNECTION_STRING": AZURE_STORAGE_CONNECTION_STRING,
        "CHAT_CONTAINER": CHAT_CONTAINER,
        "DOCUMENTS_CONTAINER": DOCUMENTS_CONTAINER,
        "KEYWORDS_BLOB": KEYWORDS_BLOB,
        "RETRIEVAL_MODE": RETRIEVAL_MODE,
        "AZURE_SEARCH_ENDPOINT": AZURE_SEARCH_ENDPOINT,
        "AZURE_SEARCH_INDEX": AZURE_SEARCH_INDEX,
        "AZURE_SEARCH_KEY": AZURE_SEARCH_KEY,
        "SYSTEM_INSTRUCTIONS_PATH": SYSTEM_INSTRUCTIONS_PATH,
        "SYSTEM_INSTRUCTIONS_PATH_RESOLVED": SYSTEM_INSTRUCTIONS_PATH_RESOLVED,
        "SYSTEM_INSTRUCTIONS_SOURCE": SYSTEM_INSTRUCTIONS_SOURCE,
        "SYSTEM_INSTRUCTIONS_LENGTH": len(SYSTEM_INSTRUCTIONS or ""),
        "APP_ENV": APP_ENV,
    }

    logger.info("dotenv loaded: %s", DOTENV_LOADED)
    logger.info("Environment configuration:")
    for key, value in values.items():
        logger.info("  %s=%s", key, _format_env_value(key, value))


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def decode_text(data: Any) -> str:
    if isinstance(data, str):
        return data
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="ignore")


_blob_lock = threading.Lock()
_blob_service_client: Optional[BlobServiceClient] = None


def azure_blob_service_client() -> BlobServiceClient:
    global _blob_service_client
    if _blob_service_client is not None:
        return _blob_service_client

    with _blob_lock:
        if _blob_service_client is None:
            if AZURE_STORAGE_CONNECTION_STRING:
                _blob_service_client = BlobServiceClient.from_connection_string(AZURE_STORAGE_CONNECTION_STRING)
            elif AZURE_STORAGE_ACCOUNT:
                account_url = f"https://{AZURE_STORAGE_ACCOUNT}.blob.core.windows.net"
                cred = DefaultAzureCredential()
                _blob_service_client = BlobServiceClient(account_url=account_url, credential=cred)
            else:
                raise RuntimeError("Missing AZURE_STORAGE_CONNECTION_STRING (or AZURE_STORAGE_ACCOUNT).")
    return _blob_service_client


_openai_lock = threading.Lock()
_openai_client: Optional[OpenAI] = None


def openai_client() -> OpenAI:
    global _openai_client
    if _openai_client is not None:
        return _openai_client

    with _openai_lock:
        if _openai_client is None:
            # No SDK-level retries: a failed call is reported to the caller as is
            if AZURE_OPENAI_ENDPOINT:
                if not AZURE_OPENAI_KEY:
                    raise RuntimeError("Missing AZURE_OPENAI_KEY")
                _openai_client = AzureOpenAI(
                    azure_endpoint=AZURE_OPENAI_ENDPOINT.strip().rstrip("/"),
                    api_key=AZURE_OPENAI_KEY,
                    api_version=AZURE_OPENAI_API_VERSION,
                    max_retries=0,
                )
            else:
                if not OPENAI_API_KEY:
                    raise RuntimeError("Missing OPENAI_API_KEY (or AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_KEY)")
                _openai_client = OpenAI(api_key=OPENAI_API_KEY, max_retries=0)
    return _openai_client


def configured_model() -> Optional[str]:
    # Azure routes by deployment name, which takes the place of the model id
    if AZURE_OPENAI_ENDPOINT:
        return AZURE_OPENAI_DEPLOYMENT
    return OPENAI_MODEL


# -----------------------------
# Keyword index & guide documents
# -----------------------------
GUIDE_REF_RE = re.compile(r"G\d+")
DESCRIPTION_MARKERS = ("DESCRIPCIÓN", "DESCRIPCION", "DESCRIPTION")
KEYWORD_MARKERS = ("PALABRAS CLAVE", "KEYWORDS")


def parse_keyword_text(text: str) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Parse the guide keyword resource.

    The text is split into sections by lines starting with ``===``:
    - a description section with ``G3 - Guía de costos`` lines
    - a keyword section with ``costo, precio -> G3`` lines

    Returns (keyword -> guide, guide -> description). Lines that do not fit
    the section they are in are skipped.
    """
    keywords: Dict[str, str] = {}
    descriptions: Dict[str, str] = {}
    section = None

    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("==="):
            marker = line.upper()
            if any(m in marker for m in DESCRIPTION_MARKERS):
                section = "descriptions"
            elif any(m in marker for m in KEYWORD_MARKERS):
                section = "keywords"
            continue
        if not line:
            continue

        if section == "descriptions" and "-" in line:
            guide_part, _, description = line.partition("-")
            m = GUIDE_REF_RE.search(guide_part)
            if m:
                descriptions[m.group(0)] = description.strip()
        elif section == "keywords" and "->" in line:
            keyword_part, _, guide_part = line.partition("->")
            m = GUIDE_REF_RE.search(guide_part)
            if not m:
                continue
            for keyword in keyword_part.split(","):
                keyword = keyword.strip().lower()
                if keyword:
                    keywords[keyword] = m.group(0)

    return keywords, descriptions


def match_keywords(
    text: str,
    keywords: Dict[str, str],
    descriptions: Dict[str, str],
) -> Dict[str, Dict[str, str]]:
    # Every matching keyword is reported, even when several point at the same guide
    found: Dict[str, Dict[str, str]] = {}
    if not text or not keywords:
        return found

    lower_text = text.lower()
    for keyword, guide in keywords.items():
        if keyword in lower_text:
            found[keyword] = {
                "guide": guide,
                "description": descriptions.get(guide) or MISSING_DESCRIPTION,
            }
    return found


class KeywordIndex:
    """Keyword and guide description tables, read from blob storage once per process."""

    def __init__(self, blob_name: str = KEYWORDS_BLOB, container: str = CHAT_CONTAINER):
        self.blob_name = blob_name
        self.container = container
        self._lock = threading.Lock()
        self._tables: Optional[Tuple[Dict[str, str], Dict[str, str]]] = None

    def is_loaded(self) -> bool:
        return self._tables is not None

    def load(self) -> Tuple[Dict[str, str], Dict[str, str]]:
        if self._tables is not None:
            return self._tables
        with self._lock:
            if self._tables is None:
                self._tables = self._read()
        return self._tables

    def _read(self) -> Tuple[Dict[str, str], Dict[str, str]]:
        blob_client = azure_blob_service_client().get_blob_client(container=self.container, blob=self.blob_name)
        try:
            if not blob_client.exists():
                logger.info("Keyword resource %s/%s not found; guide links disabled.", self.container, self.blob_name)
                return {}, {}
            data = blob_client.download_blob().readall()
        except AzureError as exc:
            raise StorageError(f"Failed to read keyword resource {self.blob_name}: {exc}") from exc

        keywords, descriptions = parse_keyword_text(decode_text(data))
        logger.info("Loaded %d keywords for %d guides from %s", len(keywords), len(descriptions), self.blob_name)
        return keywords, descriptions

    def match(self, text: str) -> Dict[str, Dict[str, str]]:
        keywords, descriptions = self.load()
        return match_keywords(text, keywords, descriptions)


class DocumentResolver:
    def __init__(self, container: str = DOCUMENTS_CONTAINER):
        self.container = container

    def resolve(self, guide_id: str) -> Optional[DocumentLocation]:
        # Lookup failures only cost the link, never the answer
        if not guide_id:
            return None
        try:
            container = azure_blob_service_client().get_container_client(self.container)
            first = next(iter(container.list_blobs(name_starts_with=guide_id)), None)
            if first is None:
                return None
            blob_client = container.get_blob_client(first.name)
            return DocumentLocation(url=blob_client.url, filename=first.name.split("/")[-1])
        except AzureError as exc:
            logger.warning("Document lookup failed for guide %s: %s", guide_id, exc)
            return None


def collect_documents(matches: Dict[str, Dict[str, str]]) -> List[DocumentRef]:
    documents: List[DocumentRef] = []
    for keyword, info in matches.items():
        location = document_resolver.resolve(info["guide"])
        if location is None:
            continue
        documents.append(
            DocumentRef(
                keyword=keyword,
                guide=info["guide"],
                description=info["description"],
                url=location.url,
                filename=location.filename,
            )
        )
    return documents


def annotate_reply(content: str, documents: List[DocumentRef]) -> str:
    if not documents:
        return content

    parts = [content, "\n\n📚 **Documentos recomendados:**\n"]
    for doc in documents:
        parts.append(f"\n👉 [{doc.filename}]({doc.url}): {doc.description}\n")
    parts.append("\nPuedes descargar estos documentos desde los enlaces proporcionados.")
    return "".join(parts)


# -----------------------------
# Transcripts
# -----------------------------
CHAT_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,128}")
USER_ID_RE = re.compile(r"[A-Za-z0-9_@-][A-Za-z0-9_.@-]{0,127}")


def validate_chat_id(chat_id: Any) -> str:
    # Browsers sometimes send the literal string of an unset JS variable
    if not isinstance(chat_id, str) or chat_id in {"undefined", "null"} or not CHAT_ID_RE.fullmatch(chat_id):
        raise InputError("Chat id not provided or invalid")
    return chat_id


def validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not USER_ID_RE.fullmatch(user_id):
        raise InputError("Invalid x-user-id header")
    return user_id


def decode_transcript(raw: Any, chat_id: str) -> List[Any]:
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("expected a JSON array")
    except ValueError as exc:
        raise StorageError(f"Transcript for chat {chat_id} is corrupt: {exc}") from exc
    return data


def parse_transcript(entries: List[Any], chat_id: str) -> List[Message]:
    try:
        return [Message.model_validate(item) for item in entries]
    except ValueError as exc:
        raise StorageError(f"Transcript for chat {chat_id} is corrupt: {exc}") from exc


class TranscriptStore:
    """
    Conversation transcripts stored as ``<user_id>/<chat_id>.json`` blobs.

    Every save overwrites the whole blob. There is no locking, so two
    requests writing the same chat at once race and the last one wins.
    """

    def __init__(self, container: str = CHAT_CONTAINER):
        self.container = container

    @staticmethod
    def blob_name(user_id: str, chat_id: str) -> str:
        return f"{validate_user_id(user_id)}/{validate_chat_id(chat_id)}.json"

    def _get_blob_client(self, user_id: str, chat_id: str):
        name = self.blob_name(user_id, chat_id)
        return azure_blob_service_client().get_blob_client(container=self.container, blob=name)

    def exists(self, user_id: str, chat_id: str) -> bool:
        blob_client = self._get_blob_client(user_id, chat_id)
        try:
            return bool(blob_client.exists())
        except AzureError as exc:
            raise StorageError(f"Failed to check chat {chat_id}: {exc}") from exc

    def read(self, user_id: str, chat_id: str) -> Optional[List[Any]]:
        """Stored entries exactly as saved, or ``None`` when the chat does not exist."""
        blob_client = self._get_blob_client(user_id, chat_id)
        try:
            if not blob_client.exists():
                return None
            raw = blob_client.download_blob().readall()
        except AzureError as exc:
            raise StorageError(f"Failed to read chat {chat_id}: {exc}") from exc
        return decode_transcript(raw, chat_id)

    def load(self, user_id: str, chat_id: str, must_exist: bool = False) -> List[Message]:
        entries = self.read(user_id, chat_id)
        if entries is None:
            if must_exist:
                raise ChatNotFoundError(f"Chat {chat_id} not found")
            return []
        return parse_transcript(entries, chat_id)

    def save(self, user_id: str, chat_id: str, messages: List[Union[Message, Dict[str, Any]]]) -> None:
        payload = json.dumps(
            [m.to_dict() if isinstance(m, Message) else m for m in messages],
            ensure_ascii=False,
        )
        blob_client = self._get_blob_client(user_id, chat_id)
        try:
            blob_client.upload_blob(payload.encode("utf-8"), overwrite=True)
        except AzureError as exc:
            raise StorageError(f"Failed to save chat {chat_id}: {exc}") from exc


# -----------------------------
# Completion
# -----------------------------
def _provider_message(exc: APIStatusError) -> str:
    body = exc.body
    if isinstance(body, dict):
        err = body.get("error", body)
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    return exc.message or "Error en la API"


def provider_grounding() -> Dict[str, Any]:
    missing = [
        name
        for name, value in (("AZURE_SEARCH_ENDPOINT", AZURE_SEARCH_ENDPOINT), ("AZURE_SEARCH_INDEX", AZURE_SEARCH_INDEX))
        if not value
    ]
    if missing:
        raise RuntimeError(f"Missing {', '.join(missing)} for RETRIEVAL_MODE=provider")

    if AZURE_SEARCH_KEY:
        authentication = {"type": "api_key", "key": AZURE_SEARCH_KEY}
    else:
        authentication = {"type": "system_assigned_managed_identity"}
    return {
        "type": "azure_search",
        "parameters": {
            "endpoint": AZURE_SEARCH_ENDPOINT,
            "index_name": AZURE_SEARCH_INDEX,
            "authentication": authentication,
            "in_scope": True,
            "top_n_documents": AZURE_SEARCH_TOP_N,
        },
    }


class CompletionClient:
    def __init__(self, temperature: float = CHAT_TEMPERATURE, max_tokens: int = CHAT_MAX_TOKENS):
        self.temperature = temperature
        self.max_tokens = max_tokens

    def complete(self, messages: List[Dict[str, str]], grounding: Optional[Dict[str, Any]] = None) -> str:
        model = configured_model()
        if not model:
            raise RuntimeError("Missing AZURE_OPENAI_DEPLOYMENT")

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if grounding:
            # Retrieval happens on the provider side ("on your data")
            kwargs["extra_body"] = {"data_sources": [grounding]}

        try:
            resp = openai_client().chat.completions.create(**kwargs)
        except APIStatusError as exc:
            raise UpstreamError(exc.status_code, _provider_message(exc)) from exc
        except APIError as exc:
            raise UpstreamError(None, exc.message) from exc

        choices = getattr(resp, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        return getattr(message, "content", None) or ""


# -----------------------------
# Request handling
# -----------------------------
def style_prompt(style: Optional[str]) -> str:
    if style and style in RESPONSE_STYLES:
        return RESPONSE_STYLES[style]
    return SYSTEM_INSTRUCTIONS


def greeting_prompt() -> str:
    return f"{SYSTEM_INSTRUCTIONS}\n\n{GREETING_INSTRUCTIONS}"


def build_messages(
    question: str,
    history: List[Message],
    style: Optional[str],
    is_new_chat: bool,
) -> List[Dict[str, str]]:
    if is_new_chat:
        return [
            {"role": "system", "content": greeting_prompt()},
            {"role": "user", "content": question},
        ]

    # Stored system messages would duplicate the prompt chosen below
    prior = [m for m in history if m.role != "system"]
    if MAX_TURNS > 0:
        prior = prior[-MAX_TURNS * 2 :]

    messages = [{"role": "system", "content": style_prompt(style)}]
    messages.extend({"role": m.role, "content": m.content} for m in prior)
    messages.append({"role": "user", "content": question})
    return messages


def load_chat(user_id: str, chat_id: Optional[str]) -> Dict[str, Any]:
    if not chat_id:
        raise InputError("Chat id not provided")
    entries = transcript_store.read(user_id, chat_id)
    if entries is None:
        raise ChatNotFoundError(f"Chat {chat_id} not found")
    return {"history": entries, "chatId": chat_id}


def ask_question(user_id: str, chat_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    question = body.get("question")
    if not isinstance(question, str) or not question.strip():
        raise InputError("The question provided is not valid")
    style = body.get("style")
    if not isinstance(style, str):
        style = "default"

    stored = transcript_store.read(user_id, chat_id)
    is_new_chat = stored is None
    if is_new_chat:
        stored = []
        logger.info("Starting chat %s for user %s", chat_id, user_id)
    history = parse_transcript(stored, chat_id)

    user_message = Message(role="user", content=question, timestamp=now_iso())
    messages = build_messages(question, history, style, is_new_chat)

    grounding = provider_grounding() if RETRIEVAL_MODE == "provider" else None
    reply = completion_client.complete(messages, grounding=grounding)

    documents: List[DocumentRef] = []
    if RETRIEVAL_MODE == "keywords":
        documents = collect_documents(keyword_index.match(question))
        reply = annotate_reply(reply, documents)

    assistant_message = Message(
        role="assistant",
        content=reply,
        timestamp=now_iso(),
        documents=documents or None,
    )
    # Earlier entries are written back as they were read
    updated = [*stored, user_message.to_dict(), assistant_message.to_dict()]
    transcript_store.save(user_id, chat_id, updated)

    result: Dict[str, Any] = {
        "response": reply,
        "chatId": chat_id,
        "history": updated,
    }
    if documents:
        result["documents"] = [d.model_dump() for d in documents]
    return result


def handle_chat_request(
    user_id: str,
    chat_id: Optional[str],
    body: Dict[str, Any],
    action: Optional[str] = None,
) -> Dict[str, Any]:
    if body.get("action", action) == "load_chat":
        return load_chat(user_id, chat_id)
    return ask_question(user_id, chat_id or str(uuid.uuid4()), body)


async def read_json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise InputError(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise InputError("Request body must be a JSON object")
    return data


def error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, ChatError):
        logger.error("Chat request failed (%s): %s", type(exc).__name__, exc)
    else:
        logger.exception("Unhandled error in chat handler")

    body: Dict[str, Any] = {"error": str(exc) or type(exc).__name__}
    if APP_ENV == "development":
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(body, status_code=500)


# -----------------------------
# FastAPI app
# -----------------------------
app = FastAPI(title="OPT-IA chat relay (Azure OpenAI + Blob Storage)")

transcript_store = TranscriptStore()
keyword_index = KeywordIndex()
document_resolver = DocumentResolver()
completion_client = CompletionClient()


@app.middleware("http")
async def add_cors_headers(request: Request, call_next):
    response = await call_next(request)
    for key, value in CORS_HEADERS.items():
        response.headers[key] = value
    return response


@app.on_event("startup")
def startup_event():
    reload_system_instructions()
    log_env_config()
    if RETRIEVAL_MODE not in RETRIEVAL_MODES:
        logger.warning("Unknown RETRIEVAL_MODE=%s; no retrieval will be used.", RETRIEVAL_MODE)


@app.api_route("/api/chat", methods=["GET", "POST", "OPTIONS"])
async def chat(request: Request):
    if request.method == "OPTIONS":
        return Response(status_code=200)

    try:
        body = await read_json_body(request)
        user_id = request.headers.get("x-user-id") or DEFAULT_USER_ID
        chat_id = request.query_params.get("chatId")
        action = request.query_params.get("action")
        result = await run_in_threadpool(handle_chat_request, user_id, chat_id, body, action)
    except Exception as exc:
        return error_response(exc)
    return JSONResponse(result)


@app.get("/api/status")
def status():
    try:
        keywords, descriptions = keyword_index.load() if RETRIEVAL_MODE == "keywords" else ({}, {})
    except Exception as exc:
        return error_response(exc)
    return {
        "ok": True,
        "model": configured_model(),
        "retrieval_mode": RETRIEVAL_MODE,
        "keywords": len(keywords),
        "guides": len(descriptions),
    }


# Entry point for: python app.py
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
