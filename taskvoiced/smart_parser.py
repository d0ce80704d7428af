"""Optional transcript parsing through a local Ollama server."""

import json
import logging
from typing import Any, Dict, List

import requests

from .actions import ActionKind, TaskAction
from .config import SmartParserConfig
from .errors import SmartParserUnavailable

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """Extract ALL tasks from this voice memo. Return EVERY task mentioned as a separate item.

Output: JSON array with objects having "action" and "text" fields.
Actions: "add" (new task), "complete" (done), "remove" (delete)

Examples:
Input: "Buy milk, call mom, finish report"
Output: [{{"action":"add","text":"Buy milk"}},{{"action":"add","text":"Call mom"}},{{"action":"add","text":"Finish report"}}]

Input: "I need to buy bread and water and also clean the house"
Output: [{{"action":"add","text":"Buy bread"}},{{"action":"add","text":"Buy water"}},{{"action":"add","text":"Clean the house"}}]

Input: "Done with email"
Output: [{{"action":"complete","text":"Email"}}]

Input: "Delete the milk task"
Output: [{{"action":"remove","text":"Milk"}}]

Input: "Hello"
Output: []

IMPORTANT: Extract EVERY task as a separate item. If there are 4 tasks, return 4 objects.

Voice memo: "{transcript}"

JSON:"""


def extract_json_block(response_text: str) -> str:
    """Pull the JSON array out of a reply that may wrap it in a code fence."""
    text = response_text.strip()
    if "```" not in text:
        return text
    for block in text.split("```"):
        block = block.strip()
        if block.startswith("json"):
            return block[len("json") :].strip()
        if block.startswith("["):
            return block
    return text


def parse_actions_payload(payload: Any) -> List[TaskAction]:
    """Convert the model's JSON into actions.

    Accepts ``[{"action": ..., "text": ...}]`` and the older
    ``[{"text": ..., "completed": bool}]`` shape.

    Raises:
        ValueError: If the payload has neither shape.
    """
    if not isinstance(payload, list):
        raise ValueError(f"Expected a JSON array, got {type(payload).__name__}")

    actions = []
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("text"), str):
            raise ValueError(f"Unexpected item in parser output: {item!r}")
        text = item["text"].strip()
        if not text:
            continue

        if "action" in item:
            try:
                kind = ActionKind(str(item["action"]).lower())
            except ValueError:
                logger.debug(f"Skipping unknown action {item['action']!r}")
                continue
        else:
            kind = ActionKind.COMPLETE if item.get("completed") else ActionKind.ADD

        actions.append(TaskAction(kind, text))
    return actions


class OllamaSmartParser:
    """Classifies transcripts with an LLM served by Ollama."""

    def __init__(self, config: SmartParserConfig, session: requests.Session = None):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.session = session or requests.Session()

    def _resolve_model(self) -> str:
        """Check the server is up and find the configured model (with or without tag)."""
        try:
            response = self.session.get(
                f"{self.base_url}/api/tags", timeout=self.config.connect_timeout_s
            )
        except requests.RequestException as e:
            raise SmartParserUnavailable(f"Ollama not available: {e}") from e

        if response.status_code != 200:
            raise SmartParserUnavailable(
                f"Failed to check Ollama models: HTTP {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise SmartParserUnavailable(f"Failed to parse models list: {e}") from e

        models = payload.get("models") if isinstance(payload, dict) else None
        if not isinstance(models, list):
            raise SmartParserUnavailable(f"Unexpected models list from Ollama: {payload!r}")

        names = [m.get("name", "") for m in models if isinstance(m, dict)]
        wanted = self.config.model
        for name in names:
            if name == wanted or name.startswith(f"{wanted}:"):
                return name

        raise SmartParserUnavailable(
            f"Model '{wanted}' not found. Available models: {', '.join(names)}"
        )

    def _generate(self, model: str, prompt: str) -> Dict[str, Any]:
        try:
            response = self.session.post(
                f"{self.base_url}/api/generate",
                json={"model": model, "prompt": prompt, "stream": False},
                timeout=self.config.request_timeout_s,
            )
        except requests.RequestException as e:
            raise SmartParserUnavailable(f"Ollama timeout or connection error: {e}") from e

        if response.status_code != 200:
            raise SmartParserUnavailable(
                f"Ollama API error {response.status_code}: {response.text}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SmartParserUnavailable(f"Failed to parse Ollama response: {e}") from e

        if not isinstance(data, dict):
            raise SmartParserUnavailable(f"Unexpected Ollama response: {data!r}")
        return data

    def classify(self, transcript: str) -> List[TaskAction]:
        """Ask the model for task actions.

        Raises:
            SmartParserUnavailable: On any connection, HTTP or format problem.
        """
        try:
            return self._classify(transcript)
        except SmartParserUnavailable:
            raise
        except Exception as e:
            raise SmartParserUnavailable(f"Unexpected error talking to Ollama: {e}") from e

    def _classify(self, transcript: str) -> List[TaskAction]:
        model = self._resolve_model()
        data = self._generate(model, PROMPT_TEMPLATE.format(transcript=transcript))

        raw = str(data.get("response", ""))
        try:
            actions = parse_actions_payload(json.loads(extract_json_block(raw)))
        except ValueError as e:
            raise SmartParserUnavailable(f"Failed to parse task JSON: {e}. Response: {raw}") from e

        logger.info(f"Ollama parsing succeeded with {len(actions)} action(s)")
        return actions
