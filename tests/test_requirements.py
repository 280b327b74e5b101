import tempfile
import unittest
from pathlib import Path

from loadout.errors import RequirementParseError
from loadout.requirements import GIT, HTTP, PATH, REGISTRY, load_requirements, parse_requirement_line, parse_requirements


class TestParseRequirementLine(unittest.TestCase):
    def test_registry_forms(self) -> None:
        req = parse_requirement_line("pdf-tools")
        self.assertEqual((req.kind, req.name, req.specifier), (REGISTRY, "pdf-tools", ""))

        req = parse_requirement_line("pdf-tools >= 1.0, < 2.0")
        self.assertEqual(req.name, "pdf-tools")
        self.assertEqual(req.specifier, ">=1.0,<2.0")
        self.assertEqual(str(req), "pdf-tools>=1.0,<2.0")

        req = parse_requirement_line("reviewer~=1.2")
        self.assertEqual((req.name, req.specifier), ("reviewer", "~=1.2"))

    def test_git_form(self) -> None:
        req = parse_requirement_line("git+https://github.com/org/skills.git@main#name=linter&path=skills/linter")
        self.assertEqual(req.kind, GIT)
        self.assertEqual(req.url, "https://github.com/org/skills.git")
        self.assertEqual(req.ref, "main")
        self.assertEqual(req.name, "linter")
        self.assertEqual(req.subdirectory, "skills/linter")
        self.assertEqual(str(req), "git+https://github.com/org/skills.git@main#name=linter&path=skills/linter")

    def test_git_ssh_keeps_user(self) -> None:
        req = parse_requirement_line("git+git@github.com:org/skills.git@v1.2.0#name=linter")
        self.assertEqual(req.url, "git@github.com:org/skills.git")
        self.assertEqual(req.ref, "v1.2.0")
        self.assertEqual(req.subdirectory, "")

    def test_git_errors(self) -> None:
        cases = [
            "git+https://github.com/org/skills.git#name=x",
            "git+https://github.com/org/skills.git@main",
            "git+https://github.com/org/skills.git@main#path=x",
            "git+https://github.com/org/skills.git@main#name=x&depth=1",
        ]
        for line in cases:
            with self.subTest(line=line):
                with self.assertRaises(RequirementParseError):
                    parse_requirement_line(line)

    def test_path_and_http(self) -> None:
        for line in ("./skills/a", "../shared/b", "~/skills/c", "/opt/skills/d"):
            with self.subTest(line=line):
                req = parse_requirement_line(line)
                self.assertEqual(req.kind, PATH)
                self.assertEqual(req.path, line)

        req = parse_requirement_line("https://example.com/a.zip")
        self.assertEqual((req.kind, req.url), (HTTP, "https://example.com/a.zip"))

    def test_missing_name(self) -> None:
        with self.assertRaises(RequirementParseError):
            parse_requirement_line(">=1.0")
        with self.assertRaises(RequirementParseError):
            parse_requirement_line("   ")


class TestParseRequirements(unittest.TestCase):
    def test_skips_comments_and_blank_lines(self) -> None:
        text = "# team skills\n\npdf-tools>=1.0\n  # indented comment\n./local/skill\n"
        reqs = parse_requirements(text)
        self.assertEqual([r.kind for r in reqs], [REGISTRY, PATH])

    def test_error_carries_line_number(self) -> None:
        with self.assertRaises(RequirementParseError) as ctx:
            parse_requirements("ok\n\ngit+https://x/y.git@main\n")
        self.assertTrue(str(ctx.exception).startswith("line 3:"))

    def test_load_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "requirements.txt"
            p.write_text("a\nb==2.0.0\n", encoding="utf-8")
            reqs = load_requirements(p)
            self.assertEqual([r.name for r in reqs], ["a", "b"])
            with self.assertRaises(RequirementParseError):
                load_requirements(Path(td) / "missing.txt")


if __name__ == "__main__":
    unittest.main()
