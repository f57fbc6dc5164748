"""Tests for snippet generation."""

from convo_recall.snippets import SnippetConfig, SnippetGenerator, query_terms


def generator(**overrides):
    return SnippetGenerator(SnippetConfig(**overrides))


LONG_FILLER = "Lorem ipsum dolor sit amet consectetur adipiscing elit. " * 8


class TestQueryTerms:

    def test_drops_stop_words_and_short_words(self):
        assert query_terms("How to fix the database error in X") == ["how", "fix", "database", "error"]

    def test_all_stop_words(self):
        assert query_terms("the and of") == []


class TestShortContent:

    def test_unchanged_without_highlight(self):
        content = "Short content about errors."
        assert generator(highlight=False).generate(content, "errors") == content

    def test_only_highlighted_when_short(self):
        assert generator().generate("Fix the bug.", "bug") == "Fix the **bug**."

    def test_no_ellipsis_when_short(self):
        content = "x" * 200
        assert generator(highlight=False).generate(content, "nothing") == content

    def test_empty_content(self):
        assert generator().generate("", "anything") == ""


class TestHighlighting:

    def test_all_occurrences_marked(self):
        snippet = generator().generate("Error in first error and second error found.", "error")
        assert snippet == "**Error** in first **error** and second **error** found."
        assert snippet.count("**") == 6

    def test_overlapping_terms_not_double_wrapped(self):
        snippet = generator().generate("The errors were logged", "error errors")
        assert snippet == "The **errors** were logged"

    def test_regex_characters_escaped(self):
        snippet = generator().generate("Call foo.bar(x) then foo_bar", "foo.bar(x)")
        assert snippet == "Call **foo.bar(x)** then foo_bar"

    def test_multibyte_content(self):
        snippet = generator().generate("Der Fehler in München: Fehler überall", "fehler")
        assert snippet == "Der **Fehler** in München: **Fehler** überall"

    def test_custom_markers(self):
        snippet = generator(highlight_start="<b>", highlight_end="</b>").generate("one bug", "bug")
        assert snippet == "one <b>bug</b>"


class TestLongContent:

    def test_no_terms_returns_truncated_start(self):
        snippet = generator(target_length=50).generate(LONG_FILLER, "the and")
        assert snippet.endswith("...")
        assert LONG_FILLER.startswith(snippet[:-3])
        assert len(snippet) <= 53
        # Cut on a word boundary
        assert LONG_FILLER[len(snippet) - 3] == " "

    def test_no_matches_returns_truncated_start(self):
        snippet = generator(target_length=50).generate(LONG_FILLER, "kubernetes")
        assert snippet.endswith("...")
        assert not snippet.startswith("...")

    def test_window_centers_on_matches(self):
        content = LONG_FILLER + "The database migration failed twice. " + LONG_FILLER
        snippet = generator(target_length=80).generate(content, "migration")

        assert "**migration**" in snippet
        assert snippet.startswith("...")
        assert snippet.endswith("...")

    def test_words_never_split(self):
        content = LONG_FILLER + "The database migration failed twice. " + LONG_FILLER
        snippet = generator(target_length=80, highlight=False).generate(content, "migration")

        assert snippet.startswith("...") and snippet.endswith("...")
        body = snippet[3:-3]
        words = set(content.split())
        for word in body.split():
            assert word in words

    def test_match_at_start_has_no_leading_ellipsis(self):
        content = "Migration notes. " + LONG_FILLER
        snippet = generator(target_length=60).generate(content, "migration")
        assert snippet.startswith("**Migration**")
        assert snippet.endswith("...")

    def test_match_at_end_has_no_trailing_ellipsis(self):
        content = LONG_FILLER + "final migration"
        snippet = generator(target_length=60, highlight=False).generate(content, "migration")
        assert snippet.endswith("final migration")
        assert snippet.startswith("...")

    def test_case_folding_does_not_shift_matches(self):
        # "İ" lowercases to two characters
        content = "İ " * 150 + "the error happened here " + "filler " * 60
        gen = generator(target_length=100)

        spans = gen._find_matches(content, ["error"])
        assert [content[s:e] for s, e in spans] == ["error"]
        assert "**error**" in gen.generate(content, "error")
