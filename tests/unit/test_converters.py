"""Unit tests for body conversion and naming helpers."""

from notesbridge.utils.converters import (
    ensure_title_heading,
    html_to_markdown,
    markdown_to_html,
    normalize_checklists_html,
    sanitize_filename,
    text_to_html,
)
from notesbridge.utils.slugs import NameAllocator, id_digest, short_id


class TestHtmlToMarkdown:
    """Tests for converting Notes HTML into Markdown."""

    def test_empty(self):
        """Test blank HTML converts to an empty string."""
        assert html_to_markdown("") == ""
        assert html_to_markdown("   ") == ""

    def test_basic_markup(self):
        """Test headings and text survive conversion."""
        markdown = html_to_markdown("<div><h1>Plans</h1></div><div>Travel in May</div>")

        assert "# Plans" in markdown
        assert "Travel in May" in markdown

    def test_checklist_items(self):
        """Test Apple checklist classes become task markers."""
        html = '<ul><li class="checked">Milk</li><li class="unchecked">Eggs</li></ul>'

        normalized = normalize_checklists_html(html)

        assert "<li>[x] Milk</li>" in normalized
        assert "<li>[ ] Eggs</li>" in normalized


class TestMarkdownToHtml:
    """Tests for rendering Markdown bodies for Notes."""

    def test_paragraphs_get_breaks(self):
        """Test consecutive paragraphs are separated by a line break."""
        html = markdown_to_html("one\n\ntwo")

        assert "</p><br><p>" in html

    def test_empty_uses_title(self):
        """Test an empty body becomes a title heading."""
        assert markdown_to_html("", note_title="A & B") == "<h1>A &amp; B</h1>"
        assert markdown_to_html("") == ""


class TestTextToHtml:
    """Tests for plain-text bodies."""

    def test_lines_become_divs(self):
        """Test each line is escaped into its own div."""
        assert text_to_html("a < b\n\nc") == "<div>a &lt; b</div><div><br></div><div>c</div>"

    def test_empty(self):
        """Test empty text."""
        assert text_to_html("") == ""


class TestSanitizeFilename:
    """Tests for filesystem-safe names."""

    def test_unsafe_characters(self):
        """Test slashes become dashes and reserved characters are dropped."""
        assert sanitize_filename('a/b: "c"?') == "a-b c"

    def test_empty_and_dots(self):
        """Test names that sanitize to nothing fall back to untitled."""
        assert sanitize_filename("") == "untitled"
        assert sanitize_filename("...") == "untitled"

    def test_whitespace_collapsed(self):
        """Test runs of whitespace and underscores collapse to one space."""
        assert sanitize_filename("  many   spaces__here ") == "many spaces here"

    def test_truncated(self):
        """Test long names are cut to the maximum length."""
        assert len(sanitize_filename("x" * 300, max_length=80)) == 80


class TestTitleHeading:
    """Tests for adding the title heading."""

    def test_prepends_heading(self):
        """Test a body without the title gets a heading."""
        assert ensure_title_heading("Milk", "Groceries") == "# Groceries\n\nMilk"

    def test_promotes_matching_first_line(self):
        """Test a first line equal to the title becomes the heading."""
        assert ensure_title_heading("Groceries\nMilk", "Groceries") == "# Groceries\n\nMilk"

    def test_keeps_existing_heading(self):
        """Test an existing title heading is left alone."""
        assert ensure_title_heading("# Groceries\nMilk", "Groceries") == "# Groceries\nMilk"

    def test_empty_body(self):
        """Test an empty body is just the heading."""
        assert ensure_title_heading("", "Groceries") == "# Groceries"

    def test_no_title(self):
        """Test a missing title leaves the body unchanged."""
        assert ensure_title_heading("Milk", None) == "Milk"


class TestNameAllocator:
    """Tests for collision-free directory names."""

    def test_short_id(self):
        """Test the last component of a Core Data id."""
        assert short_id("x-coredata://UUID/ICNote/p123") == "p123"
        assert short_id("///") == id_digest("///")

    def test_unique_title(self):
        """Test a unique title is used as-is."""
        allocator = NameAllocator()

        assert allocator.allocate("Plans", "x-coredata://U/ICNote/p1") == "Plans"

    def test_collision_uses_short_id(self):
        """Test a repeated title gets the note's short id appended."""
        allocator = NameAllocator()
        allocator.allocate("Plans", "x-coredata://U/ICNote/p1")

        assert allocator.allocate("plans", "x-coredata://U/ICNote/p2") == "plans-p2"

    def test_collision_with_suffix_uses_digest(self):
        """Test a taken short-id suffix falls back to an id digest."""
        allocator = NameAllocator()
        allocator.reserve("Plans")
        allocator.reserve("Plans-p2")

        name = allocator.allocate("Plans", "x-coredata://U/ICNote/p2")

        assert name == f"Plans-{id_digest('x-coredata://U/ICNote/p2')}"

    def test_deterministic(self):
        """Test the same allocation order gives the same names."""
        ids = [f"x-coredata://U/ICNote/p{i}" for i in range(4)]

        def run():
            allocator = NameAllocator()
            return [allocator.allocate("Same", note_id) for note_id in ids]

        assert run() == run()
        assert len(set(run())) == 4
