import pytest

from conftest import InMemoryBlobInspector
from repotally.config import TallyConfig
from repotally.diff_parser import ParsedDiff, parse_byte_changes, parse_commit_diff, parse_numstat
from repotally.exclusions import (
    DROP,
    INTO_EXCLUSION,
    KEEP,
    OUT_OF_EXCLUSION,
    ExclusionResolver,
    expand_braces,
    is_excluded,
)
from repotally.git_source import BlobLookupError


def parsed_from(numstat_text, config=None):
    config = config or TallyConfig()
    return parse_commit_diff(
        parse_numstat(numstat_text),
        parse_byte_changes(numstat_text, config.bytes_per_line),
        config,
    )


# ============================================================================
# GLOB MATCHING
# ============================================================================


class TestGlobMatching:
    @pytest.mark.parametrize(
        "path,pattern",
        [
            ("README.md", "**/*.md"),
            ("docs/deep/guide.md", "**/*.md"),
            ("node_modules/a.js", "**/node_modules/**/*"),
            ("web/node_modules/pkg/index.js", "**/node_modules/**/*"),
            (".git/config", ".git/**/*"),
            ("config/.env.local", "**/.env.*"),
            ("src/a1.py", "src/a?.py"),
            ("src/ab.py", "src/[ab]b.py"),
            ("docs/a.md", "**/*.{md,txt}"),
            ("notes/b.txt", "**/*.{md,txt}"),
            ("vendor/x/y.go", "vendor/"),
            ("docs/ñote.md", "**/*.md"),
        ],
    )
    def test_matches(self, path, pattern):
        assert is_excluded(path, [pattern])

    @pytest.mark.parametrize(
        "path,pattern",
        [
            ("README.mdx", "**/*.md"),
            ("src/node_modules_helper.js", "**/node_modules/**/*"),
            ("src/nested/a.py", "src/*.py"),
            ("src/cb.py", "src/[!c]b.py"),
            ("docs/a.rst", "**/*.{md,txt}"),
            ("src/vendored.go", "vendor/"),
        ],
    )
    def test_does_not_match(self, path, pattern):
        assert not is_excluded(path, [pattern])

    def test_is_excluded_with_defaults(self):
        patterns = TallyConfig().exclusion_patterns
        assert is_excluded("package-lock.json", patterns)
        assert is_excluded("./dist/bundle.js", patterns)
        assert is_excluded("vendor/lib/x.go", patterns)
        assert not is_excluded("src/app.ts", patterns)

    def test_is_excluded_no_patterns(self):
        assert not is_excluded("anything.md", [])

    def test_expand_braces(self):
        assert expand_braces("src/*.{ts,tsx}") == ["src/*.ts", "src/*.tsx"]
        assert expand_braces("{a,b}/{c,d}") == ["a/c", "a/d", "b/c", "b/d"]
        assert expand_braces("plain/*.py") == ["plain/*.py"]


# ============================================================================
# RESOLVER
# ============================================================================


@pytest.fixture
def resolver_factory():
    def build(patterns=None, blobs=None, **config_kwargs):
        config = TallyConfig(
            exclusion_patterns=patterns if patterns is not None else ["**/vendor/**/*"],
            **config_kwargs,
        )
        inspector = InMemoryBlobInspector(blobs)
        return ExclusionResolver(config, inspector), inspector

    return build


class TestClassify:
    def test_plain_paths(self, resolver_factory):
        resolver, _ = resolver_factory()
        assert resolver.classify("src/a.ts") == (KEEP, None)
        assert resolver.classify("vendor/a.ts") == (DROP, None)

    def test_rename_cases(self, resolver_factory):
        resolver, _ = resolver_factory()
        assert resolver.classify("{src => lib}/a.ts")[0] == KEEP
        assert resolver.classify("{vendor => vendor/old}/a.ts")[0] == DROP
        assert resolver.classify("{src => vendor}/a.ts")[0] == INTO_EXCLUSION
        assert resolver.classify("vendor/a.ts => src/a.ts")[0] == OUT_OF_EXCLUSION


class TestResolve:
    def test_excluded_file_is_dropped_and_subtracted(self, resolver_factory):
        resolver, inspector = resolver_factory()
        parsed = parsed_from("10\t2\tsrc/a.ts\n40\t0\tvendor/lib.js")
        assert parsed.lines_added == 50

        resolved = resolver.resolve("abc", parsed)

        assert [f.path for f in resolved.files_changed] == ["src/a.ts"]
        assert resolved.lines_added == 10
        assert resolved.lines_deleted == 2
        assert resolved.bytes_added == 500
        assert resolved.bytes_deleted == 100
        assert inspector.calls == []

    def test_rename_into_exclusion_subtracts_prior_size(self, resolver_factory):
        resolver, inspector = resolver_factory(blobs={("abc^", "src/big.ts"): (200, 10000)})
        parsed = parsed_from("5\t3\t{src => vendor}/big.ts")

        resolved = resolver.resolve("abc", parsed)

        assert resolved.lines_added - resolved.lines_deleted == -200
        assert resolved.bytes_added - resolved.bytes_deleted == -10000
        change = resolved.files_changed[0]
        assert change.path == "src/big.ts"
        assert (change.lines_added, change.lines_deleted) == (0, 200)
        assert (change.bytes_added, change.bytes_deleted) == (0, 10000)
        assert ("lines", "abc^", "src/big.ts") in inspector.calls

    def test_rename_out_of_exclusion_adds_prior_size(self, resolver_factory):
        resolver, _ = resolver_factory(blobs={("abc^", "vendor/util.py"): (120, 4000)})
        parsed = parsed_from("4\t1\tvendor/util.py => src/util.py")

        resolved = resolver.resolve("abc", parsed)

        change = resolved.files_changed[0]
        assert change.path == "src/util.py"
        assert change.file_type == "Python"
        assert change.lines_added == 124
        assert change.lines_deleted == 1
        assert change.bytes_added == 4000 + 200
        assert change.bytes_deleted == 50
        assert resolved.lines_added - resolved.lines_deleted == 123

    def test_rename_both_excluded_is_dropped(self, resolver_factory):
        resolver, inspector = resolver_factory()
        resolved = resolver.resolve("abc", parsed_from("3\t3\tvendor/{a => b}/x.js"))
        assert resolved.files_changed == []
        assert resolved.lines_added == 0
        assert inspector.calls == []

    def test_rename_both_included_is_unchanged(self, resolver_factory):
        resolver, inspector = resolver_factory()
        parsed = parsed_from("2\t1\t{src => lib}/x.ts")
        resolved = resolver.resolve("abc", parsed)
        assert resolved.files_changed == parsed.files_changed
        assert resolved.lines_added == 2
        assert inspector.calls == []

    def test_binary_rename_corrects_bytes_only(self, resolver_factory):
        resolver, _ = resolver_factory(blobs={("abc^", "img/logo.png"): (3, 2048)})
        resolved = resolver.resolve("abc", parsed_from("-\t-\t{img => vendor/img}/logo.png"))
        change = resolved.files_changed[0]
        assert change.file_type == "Binary"
        assert (change.lines_added, change.lines_deleted) == (0, 0)
        assert change.bytes_deleted == 2048

    def test_multiple_crossings_keep_file_order(self, resolver_factory):
        blobs = {
            ("abc^", "src/a.ts"): (10, 500),
            ("abc^", "src/b.ts"): (20, 1000),
            ("abc^", "vendor/c.ts"): (30, 1500),
        }
        resolver, _ = resolver_factory(blobs=blobs, blob_workers=3)
        text = "\n".join(
            [
                "1\t1\t{src => vendor}/a.ts",
                "1\t0\tsrc/keep.ts",
                "0\t0\t{src => vendor}/b.ts",
                "0\t0\t{vendor => src}/c.ts",
            ]
        )
        resolved = resolver.resolve("abc", parsed_from(text))

        assert [f.path for f in resolved.files_changed] == [
            "src/a.ts",
            "src/keep.ts",
            "src/b.ts",
            "src/c.ts",
        ]
        assert [f.lines_deleted for f in resolved.files_changed] == [10, 0, 20, 0]
        assert resolved.files_changed[3].lines_added == 30

    def test_lookup_failure_propagates(self, resolver_factory):
        class FailingInspector(InMemoryBlobInspector):
            def line_count(self, revision, path):
                raise BlobLookupError(["show", f"{revision}:{path}"], 128, "bad object")

        config = TallyConfig(exclusion_patterns=["**/vendor/**/*"])
        resolver = ExclusionResolver(config, FailingInspector())
        with pytest.raises(BlobLookupError):
            resolver.resolve("abc", parsed_from("1\t1\t{src => vendor}/a.ts"))

    def test_resolve_empty_diff(self, resolver_factory):
        resolver, _ = resolver_factory()
        resolved = resolver.resolve("abc", ParsedDiff())
        assert resolved.files_changed == []
