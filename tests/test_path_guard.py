import pytest

from panel_errors import ValidationError
from path_guard import is_safe_name, require_safe_name, resolve_inside


class TestPathGuard:
    @pytest.mark.parametrize("name", ["index.js", "package.json", ".env", "my-bot_v2.js", "a.b.c"])
    def test_accepts_single_segment_names(self, name) -> None:
        assert is_safe_name(name)

    @pytest.mark.parametrize(
        "name",
        ["", ".", "..", "../etc", "a..b", "src/index.js", "/abs", "..\\x", "dir\\file", "nul\x00byte", None, 42],
    )
    def test_rejects_unsafe_names(self, name) -> None:
        assert not is_safe_name(name)

    def test_require_raises_validation_error(self) -> None:
        with pytest.raises(ValidationError) as exc:
            require_safe_name("../secret")
        assert exc.value.message == "Invalid filename"
        assert exc.value.status_code == 400

    def test_resolve_inside_stays_under_root(self, tmp_path) -> None:
        p = resolve_inside(tmp_path, "index.js")
        assert p.parent == tmp_path.resolve()
        assert p.name == "index.js"

    def test_resolve_inside_checks_before_touching_disk(self, tmp_path) -> None:
        with pytest.raises(ValidationError):
            resolve_inside(tmp_path / "does-not-exist", "..")
        assert not (tmp_path / "does-not-exist").exists()
