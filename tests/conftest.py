import pytest

from sitechat import db
from sitechat.services import build_services
from tests.fakes import FakeInference, FakeWeb, long_text


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "sitechat-test.sqlite"
    db.init_database(path)
    return path


@pytest.fixture
def fake_web():
    return FakeWeb()


@pytest.fixture
def fake_inference():
    return FakeInference()


@pytest.fixture
def services(db_path, fake_web, fake_inference):
    return build_services(
        db_path=db_path,
        inference_transport=fake_inference.transport,
        web_transport=fake_web.transport,
    )


@pytest.fixture
def pipeline(services):
    return db.create_pipeline(db_path=services.db_path)


@pytest.fixture
def docs_site(fake_web):
    """Three linked pages on docs.example.com plus one off-site link."""
    fake_web.add_page(
        "https://docs.example.com/",
        "Example Docs",
        long_text("deployment"),
        links=("/guide", "/api#auth", "https://other.example.org/"),
    )
    fake_web.add_page(
        "https://docs.example.com/guide",
        "Guide",
        long_text("configuration"),
        links=("/", "/api"),
    )
    fake_web.add_page(
        "https://docs.example.com/api",
        "API Reference",
        long_text("authentication"),
    )
    fake_web.add_page(
        "https://other.example.org/",
        "Other",
        long_text("unrelated"),
    )
    return fake_web
