import shutil
import subprocess

import pytest

from pipewright.git_facts.git import current_branch, head_sha

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(repo, *args):
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


def test_branch_and_sha(tmp_path):
    _git(tmp_path, "init", "-b", "master")
    (tmp_path / "f.txt").write_text("x")
    _git(tmp_path, "add", "f.txt")
    _git(tmp_path, "-c", "user.name=t", "-c", "user.email=t@example.invalid", "commit", "-m", "init")

    assert current_branch(str(tmp_path)) == "master"
    sha = head_sha(str(tmp_path))
    assert len(sha) == 40

    _git(tmp_path, "checkout", "--detach")
    assert current_branch(str(tmp_path)) == ""


def test_outside_a_repository(tmp_path):
    with pytest.raises(subprocess.CalledProcessError):
        head_sha(str(tmp_path))
