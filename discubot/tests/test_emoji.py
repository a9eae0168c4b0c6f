"""Tests for Slack emoji codes and link parsing in Notion rich text."""

from discubot.pipeline.emoji import convert_slack_emojis, parse_content_with_links


class TestConvertSlackEmojis:
    def test_known_codes(self):
        assert convert_slack_emojis(":white_check_mark: Done! :rocket:") == "✅ Done! 🚀"

    def test_unknown_codes_kept(self):
        assert convert_slack_emojis("ratio 10:30 :not_an_emoji:") == "ratio 10:30 :not_an_emoji:"

    def test_empty(self):
        assert convert_slack_emojis("") == ""


class TestParseContentWithLinks:
    def test_plain_text(self):
        assert parse_content_with_links(":eyes: looking") == [{"type": "text", "text": {"content": "👀 looking"}}]

    def test_link_becomes_clickable(self):
        items = parse_content_with_links(":white_check_mark: Task created :link: https://notion.so/page-1 thanks")

        assert [i["text"]["content"] for i in items] == [
            "✅ Task created ", "🔗 ", "https://notion.so/page-1", " thanks",
        ]
        assert items[2]["text"]["link"] == {"url": "https://notion.so/page-1"}
        assert items[2]["annotations"] == {"color": "blue"}
        assert "link" not in items[0]["text"]

    def test_several_links(self):
        items = parse_content_with_links("🔗 https://a.example\n🔗 https://b.example")
        links = [i["text"]["link"]["url"] for i in items if "link" in i["text"]]
        assert links == ["https://a.example", "https://b.example"]

    def test_empty(self):
        assert parse_content_with_links("") == []
