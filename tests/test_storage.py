import pytest
from pydantic import ValidationError

from common.job_schema import ContactForm, PhotoStatus
from common.storage import (
    InvalidTransitionError,
    JsonFileStorage,
    MemStorage,
    build_storage,
    delete_files,
    read_as_data_uri,
    save_upload,
)


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemStorage()
    return JsonFileStorage(tmp_path / "jobs.json", tmp_path / "contacts.json")


class TestJobStore:

    def test_create_assigns_sequential_ids_and_defaults(self, any_store):
        first = any_store.create_photo(original_url="data/input/a.jpg")
        second = any_store.create_photo(original_url="data/input/b.jpg")

        assert (first.id, second.id) == (1, 2)
        assert first.status is PhotoStatus.PROCESSING
        assert first.enhanced_url is None
        assert first.created_at is not None

    def test_get_unknown_returns_none(self, any_store):
        assert any_store.get_photo(42) is None

    def test_update_merges_fields(self, any_store):
        job = any_store.create_photo(original_url="a.jpg")

        updated = any_store.update_photo(job.id, status=PhotoStatus.COMPLETED, enhanced_url="out.jpg")

        assert updated.status is PhotoStatus.COMPLETED
        assert updated.enhanced_url == "out.jpg"
        assert updated.original_url == "a.jpg"
        assert updated.created_at == job.created_at
        assert any_store.get_photo(job.id) == updated

    def test_update_unknown_is_noop(self, any_store):
        assert any_store.update_photo(7, status=PhotoStatus.FAILED) is None
        assert any_store.get_photo(7) is None

    def test_completed_requires_result(self, any_store):
        job = any_store.create_photo(original_url="a.jpg")

        with pytest.raises(ValueError):
            any_store.update_photo(job.id, status=PhotoStatus.COMPLETED)

        assert any_store.get_photo(job.id).status is PhotoStatus.PROCESSING

    def test_failed_cannot_carry_result(self, any_store):
        job = any_store.create_photo(original_url="a.jpg")

        with pytest.raises(ValueError):
            any_store.update_photo(job.id, status=PhotoStatus.FAILED, enhanced_url="out.jpg")

    @pytest.mark.parametrize("terminal", [PhotoStatus.COMPLETED, PhotoStatus.FAILED])
    def test_terminal_status_never_reverts(self, any_store, terminal):
        job = any_store.create_photo(original_url="a.jpg")
        fields = {"enhanced_url": "out.jpg"} if terminal is PhotoStatus.COMPLETED else {}
        any_store.update_photo(job.id, status=terminal, **fields)

        with pytest.raises(InvalidTransitionError):
            any_store.update_photo(job.id, status=PhotoStatus.PROCESSING, enhanced_url=None)

        assert any_store.get_photo(job.id).status is terminal

    def test_failed_cannot_become_completed(self, any_store):
        job = any_store.create_photo(original_url="a.jpg")
        any_store.update_photo(job.id, status=PhotoStatus.FAILED)

        with pytest.raises(InvalidTransitionError):
            any_store.update_photo(job.id, status=PhotoStatus.COMPLETED, enhanced_url="out.jpg")

    def test_create_contact(self, any_store):
        form = ContactForm(name="Ada", email="ada@example.com", subject="Hi", message="Old photos")

        first = any_store.create_contact(form)
        second = any_store.create_contact(form)

        assert (first.id, second.id) == (1, 2)
        assert first.email == "ada@example.com"
        assert first.created_at is not None


class TestJsonFileStorage:

    def test_records_survive_new_instance(self, tmp_path):
        jobs, contacts = tmp_path / "jobs.json", tmp_path / "contacts.json"
        first = JsonFileStorage(jobs, contacts)
        job = first.create_photo(original_url="a.jpg")
        first.update_photo(job.id, status=PhotoStatus.FAILED)

        second = JsonFileStorage(jobs, contacts)

        assert second.get_photo(job.id).status is PhotoStatus.FAILED
        assert second.create_photo(original_url="b.jpg").id == job.id + 1

    def test_empty_file_reads_as_no_records(self, tmp_path):
        jobs = tmp_path / "jobs.json"
        jobs.write_text("")

        assert JsonFileStorage(jobs, tmp_path / "contacts.json").get_photo(1) is None


class TestContactForm:

    def test_blank_fields_are_rejected(self):
        with pytest.raises(ValidationError) as excinfo:
            ContactForm(name="Ada", email="   ", subject="Hi", message="x")

        assert [err["loc"] for err in excinfo.value.errors()] == [("email",)]

    def test_whitespace_is_stripped(self):
        form = ContactForm(name=" Ada ", email="ada@example.com", subject="Hi", message="x")
        assert form.name == "Ada"


def test_build_storage_rejects_unknown_backend():
    assert isinstance(build_storage("memory"), MemStorage)
    with pytest.raises(RuntimeError):
        build_storage("s3")


def test_save_upload_keeps_suffix(tmp_path):
    path = save_upload("Grandma.PNG", b"bytes", input_dir=tmp_path)

    assert path.parent == tmp_path
    assert path.suffix == ".png"
    assert path.read_bytes() == b"bytes"
    assert save_upload("Grandma.PNG", b"bytes", input_dir=tmp_path) != path


def test_read_as_data_uri(tmp_path):
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"\xff\xd8abc")

    assert read_as_data_uri(path) == "data:image/jpeg;base64,/9hhYmM="


def test_delete_files_ignores_missing(tmp_path):
    present = tmp_path / "present.jpg"
    present.write_bytes(b"x")

    delete_files([tmp_path / "missing.jpg", present])

    assert not present.exists()
