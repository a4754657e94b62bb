import threading

import pytest
import yaml

from selfcast.content import ContentItem
from selfcast.errors import ConflictError, NotFound, StoreFailure, ValidationError
from selfcast.protocols import ContentStore
from selfcast.store import MemoryContentStore, YamlContentStore


@pytest.fixture(params=["memory", "yaml"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryContentStore()
    return YamlContentStore(tmp_path / "data")


def test_stores_satisfy_protocol(any_store):
    assert isinstance(any_store, ContentStore)


def test_create_and_get(any_store):
    project = any_store.create_project("acme", "Acme", [ContentItem("rendered_title", "A")])
    assert project.project_id == "acme"
    fetched = any_store.get_project("acme")
    assert fetched.name == "Acme"
    assert any_store.get_content("acme") == [ContentItem("rendered_title", "A")]


def test_create_rejects_duplicates_and_bad_input(any_store):
    any_store.create_project("acme", "Acme")
    with pytest.raises(ConflictError):
        any_store.create_project("acme", "Again")
    with pytest.raises(ValidationError):
        any_store.create_project("Bad Id", "Name")
    with pytest.raises(ValidationError):
        any_store.create_project("blank", "   ")


def test_unknown_project_is_not_found(any_store):
    with pytest.raises(NotFound):
        any_store.get_content("nope")
    with pytest.raises(NotFound):
        any_store.save_content("nope", [ContentItem("a", "b")])
    with pytest.raises(NotFound):
        any_store.get_project("../etc/passwd")


def test_save_content_merges(any_store):
    any_store.create_project("acme", "Acme", [ContentItem("a", "1"), ContentItem("b", "2")])
    project = any_store.save_content("acme", [ContentItem("b", "x"), ContentItem("c", "3")])
    assert project.content == [ContentItem("a", "1"), ContentItem("b", "x"), ContentItem("c", "3")]
    assert any_store.get_content("acme") == project.content


def test_save_content_rejects_empty_key_without_writing(any_store):
    any_store.create_project("acme", "Acme", [ContentItem("a", "1")])
    with pytest.raises(ValidationError):
        any_store.save_content("acme", [ContentItem("b", "2"), ContentItem(" ", "x")])
    assert any_store.get_content("acme") == [ContentItem("a", "1")]


def test_update_project_writes_content_and_metadata_together(any_store):
    created = any_store.create_project("acme", "Acme")
    updated = any_store.update_project(
        "acme", items=[ContentItem("slogan", "hi")], name="Acme Inc", settings={"plan": "pro"}
    )
    assert updated.name == "Acme Inc"
    assert updated.settings == {"plan": "pro"}
    assert updated.content == [ContentItem("slogan", "hi")]
    assert updated.updated_at >= created.updated_at


def test_update_metadata_requires_a_field(any_store):
    any_store.create_project("acme", "Acme")
    with pytest.raises(ValidationError):
        any_store.update_metadata("acme")
    assert any_store.update_metadata("acme", name="New").name == "New"


def test_touch_and_mark_revalidated(any_store):
    created = any_store.create_project("acme", "Acme")
    any_store.touch("acme")
    any_store.mark_revalidated("acme", "cafebabe")
    project = any_store.get_project("acme")
    assert project.updated_at >= created.updated_at
    assert project.last_revalidated_fingerprint == "cafebabe"


def test_list_projects_newest_first(any_store):
    any_store.create_project("first", "First")
    any_store.create_project("second", "Second")
    any_store.touch("first")
    assert [p.project_id for p in any_store.list_projects()] == ["first", "second"]


def test_memory_store_returns_copies():
    store = MemoryContentStore()
    store.create_project("acme", "Acme")
    project = store.get_project("acme")
    project.content.append(ContentItem("x", "y"))
    assert store.get_content("acme") == []


def test_yaml_store_document_layout(tmp_path):
    store = YamlContentStore(tmp_path)
    store.create_project("acme", "Acme", [ContentItem("rendered_title", "Ünïcode")])
    path = tmp_path / "projects" / "acme.yaml"
    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert document["projectId"] == "acme"
    assert document["content"] == [{"key": "rendered_title", "value": "Ünïcode"}]
    assert not [p for p in path.parent.iterdir() if p.name.startswith(".")]


def test_yaml_store_malformed_document_is_store_failure(tmp_path):
    store = YamlContentStore(tmp_path)
    store.projects_dir.mkdir(parents=True)
    store.document_path("acme").write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(StoreFailure):
        store.get_project("acme")
    store.document_path("acme").write_text("projectId: [unclosed", encoding="utf-8")
    with pytest.raises(StoreFailure):
        store.get_project("acme")


def test_yaml_store_write_failure_is_store_failure(tmp_path, monkeypatch):
    store = YamlContentStore(tmp_path)
    store.create_project("acme", "Acme")

    def broken(path, text):
        raise OSError("disk full")

    monkeypatch.setattr("selfcast.store.atomic_write_text", broken)
    with pytest.raises(StoreFailure):
        store.save_content("acme", [ContentItem("a", "b")])


def test_concurrent_saves_to_one_project_keep_every_key(tmp_path):
    store = YamlContentStore(tmp_path)
    store.create_project("acme", "Acme")

    def save(n):
        store.save_content("acme", [ContentItem(f"key_{n}", str(n))])

    threads = [threading.Thread(target=save, args=(n,)) for n in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert {item.key for item in store.get_content("acme")} == {f"key_{n}" for n in range(10)}
