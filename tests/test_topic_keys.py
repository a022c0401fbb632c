from core.topic_keys import MAX_COMPONENT_CHARS, TopicIdentity, sanitize_component


def test_sanitize_replaces_unsafe_characters() -> None:
    assert sanitize_component('a<b>c:d"e/f\\g|h?i*j') == "a_b_c_d_e_f_g_h_i_j"


def test_sanitize_collapses_whitespace_and_lowercases() -> None:
    assert sanitize_component("Daily  Standup\tNotes") == "daily-standup-notes"


def test_sanitize_truncates_long_names() -> None:
    assert len(sanitize_component("x" * 250)) == MAX_COMPONENT_CHARS


def test_identity_equality_uses_sanitized_key() -> None:
    first = TopicIdentity("@Team", "Deploy Notes")
    second = TopicIdentity("@team", "deploy notes")
    assert first == second
    assert hash(first) == hash(second)
    assert first.key == "@team:deploy-notes"
    assert str(first) == "@Team/Deploy Notes"


def test_identity_keeps_raw_names_for_delivery() -> None:
    identity = TopicIdentity("chat_id:-100", "42")
    assert identity.channel == "chat_id:-100"
    assert identity.safe_channel == "chat_id_-100"
    assert identity.safe_subtopic == "42"
