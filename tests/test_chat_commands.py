from mastobot.chat_commands import HELP_MESSAGE, ChatCommands, is_chat_command, is_command
from mastobot.preference_store import PreferenceStore
from mastobot.prompt_library import PromptLibrary


def _setup(tmp_path):
    (tmp_path / ".systemprompt").write_text("default prompt", encoding="utf-8")
    (tmp_path / ".systemprompt_pirate").write_text("talk like a pirate", encoding="utf-8")
    cleared = []
    cmds = ChatCommands(PreferenceStore(tmp_path), PromptLibrary(tmp_path), clear_session=cleared.append)
    return cmds, cleared


def test_command_detection():
    assert is_command(" !chat help") and is_chat_command("!chat help")
    assert is_command("!other") and not is_chat_command("!other")
    assert not is_command("hello")


def test_show_current_prompt_and_values(tmp_path):
    cmds, _ = _setup(tmp_path)
    out = cmds.handle("!chat systemprompt", "alice", "1")
    assert out.startswith("The system prompt is the default.")
    assert "- ''" in out and "- pirate" in out


def test_set_known_prompt_clears_session(tmp_path):
    cmds, cleared = _setup(tmp_path)
    assert cmds.handle("!chat systemprompt pirate", "alice", "1") == "The system prompt is now pirate."
    assert cmds.prefs.get_system_prompt("alice") == "pirate"
    assert cleared == ["1"]
    assert cmds.handle("!chat systemprompt", "alice", "1").startswith("The system prompt is pirate.")


def test_reset_prompt(tmp_path):
    cmds, cleared = _setup(tmp_path)
    cmds.handle("!chat systemprompt pirate", "alice", "1")
    assert cmds.handle("!chat systemprompt ''", "alice", "1") == "The system prompt has been reset."
    assert cmds.prefs.get_system_prompt("alice") == ""
    assert cleared == ["1", "1"]


def test_unknown_prompt_and_path_tricks_are_rejected(tmp_path):
    cmds, cleared = _setup(tmp_path)
    assert cmds.handle("!chat systemprompt ninja", "alice", "1") == "That system prompt was not found."
    assert cmds.handle("!chat systemprompt ../etc/passwd", "alice", "1") == "That system prompt was not found."
    assert cleared == []


def test_help_and_unknown_commands(tmp_path):
    cmds, _ = _setup(tmp_path)
    assert cmds.handle("!chat help", "alice", "1") == HELP_MESSAGE
    assert cmds.handle("!chat dance", "alice", "1") == HELP_MESSAGE
