import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from convo_backend.config import Settings  # noqa: E402
from convo_backend.repository import ConversationRepository  # noqa: E402
from convo_backend.services.media import MediaStore  # noqa: E402


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        openai_api_key="sk-test",
        openai_base_url="https://provider.test/v1",
        deepgram_api_key="dg-test",
        deepgram_speak_url="https://speech.test/v1/speak",
        auth_service_url="https://auth.test",
        internal_server_key="shared-secret",
        chat_database_path=tmp_path / "conversations.db",
        public_dir=tmp_path / "public",
        relay_queue_size=4,
    )


@pytest.fixture
async def repository(tmp_path):
    repo = ConversationRepository(tmp_path / "conversations.db")
    await repo.initialize()
    try:
        yield repo
    finally:
        await repo.close()


@pytest.fixture
def media_store(tmp_path) -> MediaStore:
    return MediaStore(tmp_path / "public")
