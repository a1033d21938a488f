import json
import os
import sys
import tempfile
from pathlib import Path

import pytest


SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ["CAF_CASE_STORE_BACKEND"] = "sqlite"
os.environ["CAF_MEDIA_UPLOAD_BACKEND"] = "local"
os.environ["CAF_PUBLIC_BASE_URL"] = "http://testserver"
os.environ["CAF_LLM_ENDPOINT"] = "https://llm.test/v1/chat/completions"
os.environ["OPENROUTER_API_KEY"] = "test-key"
os.environ["CAF_LLM_TIMEOUT_SECONDS"] = "5"
os.environ["CAF_EXPOSE_ERRORS"] = "true"
os.environ["CAF_MAX_UPLOAD_BYTES"] = "1024"

_TEST_DATA_DIR = Path(tempfile.gettempdir()) / "caf-copilot-service-tests"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ["CAF_LOCAL_DATA_DIR"] = str(_TEST_DATA_DIR)
os.environ["CAF_SQLITE_DB_PATH"] = str(_TEST_DATA_DIR / "caf_cases.sqlite3")


class ScriptedModel:
    """
    Stands in for the model provider: returns queued responses in order and
    records every (config, prompt) it was called with.
    """

    def __init__(self):
        self.responses = []
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    async def invoke(self, config, prompt):
        self.calls.append((config, prompt))
        if not self.responses:
            raise AssertionError("Unexpected model call: no scripted response left.")
        item = self.responses.pop(0)
        if isinstance(item, (dict, list)):
            return json.dumps(item)
        return item

    @property
    def last_prompt(self):
        return self.calls[-1][1]


@pytest.fixture
def scripted_model(monkeypatch):
    from model_invoker import ModelInvoker

    model = ScriptedModel()

    async def _invoke(self, config, prompt):
        return await model.invoke(config, prompt)

    monkeypatch.setattr(ModelInvoker, "invoke", _invoke)
    return model


@pytest.fixture
def memory_orchestrator():
    from case_repository import InMemoryCaseRepository
    from orchestrator import CafCopilotOrchestrator

    return CafCopilotOrchestrator(case_repository=InMemoryCaseRepository())
