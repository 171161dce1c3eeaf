from mastobot.preference_store import PreferenceStore
from mastobot.prompt_library import PromptLibrary, render_past_posts


def test_read_named_default_and_unknown(tmp_path):
    (tmp_path / ".systemprompt").write_text("default", encoding="utf-8")
    (tmp_path / ".systemprompt_poet").write_text("poet", encoding="utf-8")
    lib = PromptLibrary(tmp_path)
    assert lib.read() == "default"
    assert lib.read("poet") == "poet"
    assert lib.read("missing") == "default"
    assert lib.list_names() == ["''", "poet"]


def test_past_posts_are_appended(tmp_path):
    (tmp_path / ".systemprompt").write_text("default", encoding="utf-8")
    lib = PromptLibrary(tmp_path)
    block = render_past_posts(["first", "", "second"])
    assert block == "## Past posts\n\n- first\n- second"
    assert lib.read(None, block) == "default\n\n" + block
    assert render_past_posts([]) == ""
    assert render_past_posts(["a", "b", "c"], limit=2) == "## Past posts\n\n- a\n- b"


def test_missing_directory_is_harmless(tmp_path):
    lib = PromptLibrary(tmp_path / "nope")
    assert lib.read() == ""
    assert lib.list_names() == []


def test_preferences_persist_across_instances(tmp_path):
    PreferenceStore(tmp_path).set_system_prompt("alice@example.social", "poet")
    store = PreferenceStore(tmp_path)
    assert store.get_system_prompt("alice@example.social") == "poet"
    assert store.get_system_prompt("bob") is None


def test_corrupt_preferences_read_as_empty(tmp_path):
    (tmp_path / "users.json").write_text("{not json", encoding="utf-8")
    store = PreferenceStore(tmp_path)
    assert store.get_system_prompt("alice") is None
    store.set_system_prompt("alice", "poet")
    assert store.get_system_prompt("alice") == "poet"
