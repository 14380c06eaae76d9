"""
Normalizer tests: core/metadata split, reaction shapes, author index.
"""

from normalizer import (
    CORE_FIELDS,
    author_lookup,
    build_author_index,
    build_metadata,
    normalize_reactions,
    scrub_message,
)

from fakes import make_message


class TestScrubMessage:

    def test_plain_message_has_no_metadata(self):
        scrubbed = scrub_message(make_message(1, type=0, pinned=False, embeds=[], attachments={}))
        assert scrubbed == {
            "id": scrubbed["id"],
            "createdTimestamp": scrubbed["createdTimestamp"],
            "content": "message 1",
        }

    def test_author_not_carried_into_snapshot(self):
        scrubbed = scrub_message(make_message(1))
        assert "author" not in scrubbed
        assert "author" not in scrubbed.get("metadata", {})

    def test_metadata_never_repeats_core_fields(self):
        msg = make_message(
            1,
            reactions=[{"emoji": "x", "count": 1, "users": ["1"]}],
            reference={"messageId": "2", "channelId": "3", "guildId": "4"},
            editedTimestamp=1700000009999,
            flags={"bitfield": 4},
            nonce="abc",
        )
        metadata = scrub_message(msg)["metadata"]
        assert not set(metadata) & set(CORE_FIELDS)
        assert metadata["flags"] == 4
        assert metadata["reference"]["messageId"] == "2"

    def test_keyed_attachments_become_list(self):
        msg = make_message(1, attachments={
            "9": {"id": "9", "name": "a.png", "url": "https://cdn/a.png", "size": 10, "contentType": "image/png"},
        })
        metadata = build_metadata(msg)
        assert metadata["attachments"] == [
            {"id": "9", "name": "a.png", "url": "https://cdn/a.png", "size": 10, "contentType": "image/png"}
        ]

    def test_mentions_scrubbed_to_ids_and_names(self):
        msg = make_message(1, mentions={
            "users": {"5": {"id": "5", "username": "five", "avatar": "zzz"}},
            "roles": {},
            "everyone": False,
            "repliedUser": None,
        })
        assert build_metadata(msg)["mentions"] == {"users": [{"id": "5", "username": "five"}]}


class TestReactions:

    def test_bare_string_emoji(self):
        assert normalize_reactions(["🔥"]) == [
            {"emoji": {"name": "🔥", "id": None, "animated": False}, "count": None, "users": []}
        ]

    def test_user_objects_reduced_to_ids(self):
        reactions = [{"emoji": {"name": "pog", "id": "77", "animated": True}, "count": 2,
                      "users": [{"id": "1"}, "2"]}]
        assert normalize_reactions(reactions) == [
            {"emoji": {"name": "pog", "id": "77", "animated": True}, "count": 2, "users": ["1", "2"]}
        ]

    def test_empty_reactions_omitted(self):
        assert "reactions" not in build_metadata(make_message(1, reactions=[]))


class TestAuthorIndex:

    def test_groups_message_ids_by_author(self):
        messages = [
            make_message(1, author_id="111111111111111111"),
            make_message(2, author_id="222222222222222222"),
            make_message(3, author_id="111111111111111111"),
        ]
        authors = build_author_index(messages)

        assert set(authors) == {"111111111111111111", "222222222222222222"}
        assert authors["111111111111111111"]["msgIds"] == [messages[0]["id"], messages[2]["id"]]

    def test_message_without_author_left_out(self):
        messages = [make_message(1), make_message(2, author_id=None)]
        lookup = author_lookup(build_author_index(messages))

        assert messages[0]["id"] in lookup
        assert messages[1]["id"] not in lookup
