"""Tests for builds/cache_key.py module.

Tests address computation, snapshot normalization, and deterministic hashing.
"""

import pytest

from storebuild.builds.cache_key import (
    ADDRESS_SCHEMA_VERSION,
    address_digest,
    compute_address,
    description_snapshot,
    is_address,
    serialize_value,
    short_address,
)
from storebuild.builds.description import (
    BuildDescription,
    InputRef,
    OutputRef,
    ScriptRef,
)

DEP_ADDRESS = "sha256:" + "a" * 64
OTHER_ADDRESS = "sha256:" + "b" * 64


@pytest.fixture
def app_description() -> BuildDescription:
    """Create the compile example description."""
    return BuildDescription.create(
        name="app",
        builder="/usr/bin/gcc",
        args=["-o", OutputRef("app"), InputRef("src")],
        inputs={"src": "main.c"},
        outputs=["app"],
        system="x86_64-linux",
    )


class TestSerializeValue:
    """Tests for serialize_value function."""

    def test_literal(self):
        """Literals serialize as themselves."""
        assert serialize_value("-O2") == "-O2"

    def test_references_are_tagged(self):
        """References serialize to distinct tagged objects."""
        assert serialize_value(InputRef("src", "inc")) == {"input": "src", "path": "inc"}
        assert serialize_value(OutputRef("bin")) == {"out": "bin"}
        assert serialize_value(ScriptRef()) == {"script": True}

    def test_reference_differs_from_lookalike_literal(self):
        """An output reference must not serialize like the string '$out'."""
        assert serialize_value(OutputRef()) != serialize_value("$out")


class TestDescriptionSnapshot:
    """Tests for description_snapshot function."""

    def test_includes_resolved_inputs(self, app_description):
        """Snapshot should carry input addresses, not names."""
        snapshot = description_snapshot(app_description, {"src": DEP_ADDRESS})
        assert snapshot["inputs"] == {"src": DEP_ADDRESS}
        assert snapshot["schema_version"] == ADDRESS_SCHEMA_VERSION
        assert snapshot["system"] == "x86_64-linux"

    def test_unresolved_input(self, app_description):
        """Should refuse to snapshot with an unresolved input."""
        with pytest.raises(ValueError, match="not resolved"):
            description_snapshot(app_description, {})

    def test_source_path_not_included(self, tmp_path):
        """Only the source digest takes part; moving the file keeps the address."""
        first = tmp_path / "a" / "main.c"
        second = tmp_path / "b" / "main.c"
        for path in (first, second):
            path.parent.mkdir()
            path.write_text("int main(void) { return 0; }\n")

        a = BuildDescription.from_source("main.c", first, system="s")
        b = BuildDescription.from_source("main.c", second, system="s")

        assert compute_address(a) == compute_address(b)
        assert str(first) not in str(description_snapshot(a, {}))


class TestComputeAddress:
    """Tests for compute_address function."""

    def test_format(self, app_description):
        """Address should be sha256: followed by 64 hex digits."""
        address = compute_address(app_description, {"src": DEP_ADDRESS})
        assert is_address(address)

    def test_deterministic(self, app_description):
        """Same description and inputs give the same address."""
        a = compute_address(app_description, {"src": DEP_ADDRESS})
        b = compute_address(app_description, {"src": DEP_ADDRESS})
        assert a == b

    def test_structurally_equal_descriptions(self, app_description):
        """Independently built equal descriptions share an address."""
        twin = BuildDescription.create(
            name="app",
            builder="/usr/bin/gcc",
            args=["-o", OutputRef("app"), InputRef("src")],
            inputs={"src": "main.c"},
            outputs=["app"],
            system="x86_64-linux",
        )
        assert compute_address(twin, {"src": DEP_ADDRESS}) == compute_address(
            app_description, {"src": DEP_ADDRESS}
        )

    def test_input_address_changes_address(self, app_description):
        """A different input address gives a different address."""
        a = compute_address(app_description, {"src": DEP_ADDRESS})
        b = compute_address(app_description, {"src": OTHER_ADDRESS})
        assert a != b

    @pytest.mark.parametrize(
        "changes",
        [
            {"name": "app2"},
            {"system": "aarch64-linux"},
            {"builder": "/usr/bin/clang"},
            {"args": ["-O2", "-o", OutputRef("app"), InputRef("src")]},
            {"env": {"CFLAGS": "-O2"}},
            {"outputs": []},
            {"script": "echo\n"},
        ],
    )
    def test_every_field_participates(self, app_description, changes):
        """Changing any field changes the address."""
        fields = {
            "name": "app",
            "builder": "/usr/bin/gcc",
            "args": ["-o", OutputRef("app"), InputRef("src")],
            "inputs": {"src": "main.c"},
            "outputs": ["app"],
            "system": "x86_64-linux",
        }
        fields.update(changes)
        changed = BuildDescription.create(**fields)
        assert compute_address(changed, {"src": DEP_ADDRESS}) != compute_address(
            app_description, {"src": DEP_ADDRESS}
        )

    def test_env_order_does_not_matter(self):
        """Env given in different orders gives the same address."""
        a = BuildDescription.create(
            name="x", builder="/bin/sh", env={"A": "1", "B": "2"}, system="s"
        )
        b = BuildDescription.create(
            name="x", builder="/bin/sh", env={"B": "2", "A": "1"}, system="s"
        )
        assert compute_address(a) == compute_address(b)

    def test_arg_order_matters(self):
        """Argument order is significant."""
        a = BuildDescription.create(name="x", builder="/bin/sh", args=["a", "b"], system="s")
        b = BuildDescription.create(name="x", builder="/bin/sh", args=["b", "a"], system="s")
        assert compute_address(a) != compute_address(b)


class TestAddressHelpers:
    """Tests for address parsing helpers."""

    def test_is_address(self):
        """Should validate the address format."""
        assert is_address(DEP_ADDRESS)
        assert not is_address("sha256:xyz")
        assert not is_address("a" * 64)
        assert not is_address("sha256:" + "A" * 64)

    def test_address_digest(self):
        """Should strip the prefix."""
        assert address_digest(DEP_ADDRESS) == "a" * 64

    def test_address_digest_malformed(self):
        """Should reject malformed addresses."""
        with pytest.raises(ValueError, match="Malformed"):
            address_digest("sha256:../../etc")

    def test_short_address(self):
        """Should shorten for display."""
        assert short_address(DEP_ADDRESS) == "a" * 12
        assert short_address(DEP_ADDRESS, 4) == "aaaa"
