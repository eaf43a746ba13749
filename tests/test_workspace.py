"""Tests for previewd.workspace."""

import pytest

from previewd.workspace import TaskWorkspace, list_files, validate_id


class TestValidateId:
    @pytest.mark.parametrize("value", ["task-1", "gpt-4o", "claude_3.5", "A1"])
    def test_accepts(self, value):
        assert validate_id(value) == value

    @pytest.mark.parametrize("value", ["", "..", "../etc", "a/b", ".hidden", "a..b", None])
    def test_rejects(self, value):
        with pytest.raises(ValueError):
            validate_id(value, "taskId")


class TestListFiles:
    def test_sorted_posix_paths(self, make_artifact, workspace):
        make_artifact("t1", "m1", {"b.html": "", "a/c.js": "", "a/b/d.css": ""})
        assert workspace.list_files("t1", "m1") == ["a/b/d.css", "a/c.js", "b.html"]

    def test_skips_dependency_dirs(self, make_artifact, workspace):
        make_artifact(
            "t1",
            "m1",
            {
                "package.json": "{}",
                "node_modules/x/index.js": "",
                ".git/HEAD": "",
                ".venv/bin/python": "",
            },
        )
        assert workspace.list_files("t1", "m1") == ["package.json"]

    def test_missing_artifact(self, workspace):
        assert workspace.list_files("nope", "m1") == []
        assert not workspace.exists("nope", "m1")

    def test_module_function_on_plain_dir(self, tmp_path):
        (tmp_path / "index.html").write_text("")
        assert list_files(tmp_path) == ["index.html"]


class TestResolveFile:
    def test_inside(self, make_artifact, workspace):
        root = make_artifact("t1", "m1", {"css/site.css": "body{}"})
        assert workspace.resolve_file("t1", "m1", "css/site.css") == (
            root / "css" / "site.css"
        ).resolve()

    def test_traversal_blocked(self, make_artifact, workspace, tasks_dir):
        make_artifact("t1", "m1", {"index.html": ""})
        make_artifact("t1", "m2", {"secret.txt": "x"})
        assert workspace.resolve_file("t1", "m1", "../m2/secret.txt") is None

    def test_missing_or_directory(self, make_artifact, workspace):
        make_artifact("t1", "m1", {"css/site.css": ""})
        assert workspace.resolve_file("t1", "m1", "nope.html") is None
        assert workspace.resolve_file("t1", "m1", "css") is None

    def test_bad_ids_raise(self, workspace):
        with pytest.raises(ValueError):
            workspace.resolve_file("..", "m1", "index.html")


class TestSandbox:
    def test_isolate_copies_without_dependencies(self, make_artifact, workspace):
        make_artifact("t1", "m1", {"server.py": "print(1)", "node_modules/x.js": ""})
        sandbox = workspace.isolate("t1", "m1")
        assert sandbox == workspace.sandbox_dir("t1", "m1")
        assert sandbox.name == "m1_preview"
        assert (sandbox / "server.py").read_text() == "print(1)"
        assert not (sandbox / "node_modules").exists()

    def test_resync_prunes_deleted_files_keeps_installed_deps(
        self, make_artifact, workspace
    ):
        root = make_artifact("t1", "m1", {"a.py": "", "b.py": ""})
        sandbox = workspace.isolate("t1", "m1")
        (sandbox / "node_modules").mkdir()
        (sandbox / "node_modules" / "dep.js").write_text("")
        (root / "b.py").unlink()
        (root / "a.py").write_text("changed")

        workspace.isolate("t1", "m1")
        assert not (sandbox / "b.py").exists()
        assert (sandbox / "a.py").read_text() == "changed"
        assert (sandbox / "node_modules" / "dep.js").exists()

    def test_sandbox_not_listed_as_artifact(self, make_artifact, workspace):
        make_artifact("t1", "m1", {"a.py": ""})
        workspace.isolate("t1", "m1")
        assert workspace.list_files("t1", "m1") == ["a.py"]

    def test_cleanup(self, make_artifact, workspace):
        make_artifact("t1", "m1", {"a.py": ""})
        sandbox = workspace.isolate("t1", "m1")
        workspace.cleanup_sandbox("t1", "m1")
        assert not sandbox.exists()
        workspace.cleanup_sandbox("t1", "m1")
