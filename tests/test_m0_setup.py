"""
M0 Acceptance Test: Verify basic repo setup.
"""


def test_repo_structure():
    """Verify basic repository structure exists."""
    from pathlib import Path

    repo_root = Path(__file__).parent.parent

    # Check required files
    assert (repo_root / "pyproject.toml").exists()
    assert (repo_root / "run.py").exists()

    # Check source structure
    assert (repo_root / "src").is_dir()
    assert (repo_root / "src" / "storage").is_dir()
    assert (repo_root / "src" / "sync").is_dir()
    assert (repo_root / "src" / "support").is_dir()
    assert (repo_root / "src" / "shared").is_dir()
    assert (repo_root / "src" / "web" / "routers").is_dir()

    # Check tests directory
    assert (repo_root / "tests").is_dir()


def test_packages_import():
    """Core packages import without side effects on the data root."""
    from src.storage import backends, dual_repository, local_store, mode, shared_store  # noqa: F401
    from src.support import models, ticket_service  # noqa: F401
    from src.sync import coordinator, poller  # noqa: F401
