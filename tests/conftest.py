import pytest

from models import BackendKind, Profile


@pytest.fixture
def make_profile():
    def _make(kind: BackendKind = BackendKind.OPENAI, endpoint: str = "", **kwargs) -> Profile:
        return Profile(
            name=kwargs.pop("name", kind.value),
            backend_kind=kind,
            model_id=kwargs.pop("model_id", "test-model"),
            endpoint=endpoint,
            **kwargs,
        )
    return _make
