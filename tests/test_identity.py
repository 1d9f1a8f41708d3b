import unittest

from devicegate.identity import IdentityBuilder, UNKNOWN
from devicegate.models import DeviceCharacteristics
from devicegate.util import sha256_hex


def sample(**changes) -> DeviceCharacteristics:
    data = {
        "cpu": {"model": "Apple M2", "architecture": "arm64", "cores": 8},
        "gpu": {"vendor": "Apple", "renderer": "Apple M2", "memory": 8192},
        "os": {"platform": "darwin", "architecture": "arm64", "version": "14.2"},
        "webgl": "WebGL 2.0 (OpenGL ES 3.0 Chromium)",
    }
    for path, value in changes.items():
        section, _, field = path.partition("__")
        if field:
            data[section][field] = value
        else:
            data[section] = value
    return DeviceCharacteristics(**data)


class TestDeterminism(unittest.TestCase):

    def setUp(self):
        self.builder = IdentityBuilder("pepper-a", "pepper-b")

    def test_same_inputs_same_identity(self):
        a = self.builder.derive_identity(sample(), "198.51.100.4")
        b = self.builder.derive_identity(sample(), "198.51.100.4")
        self.assertEqual(a, b)

    def test_identity_is_64_lowercase_hex(self):
        identity = self.builder.derive_identity(sample(), "198.51.100.4")
        self.assertRegex(identity, r"^[a-f0-9]{64}$")

    def test_fresh_builder_same_peppers_agrees(self):
        other = IdentityBuilder("pepper-a", "pepper-b")
        self.assertEqual(
            self.builder.derive_identity(sample(), "198.51.100.4"),
            other.derive_identity(sample(), "198.51.100.4"),
        )


class TestAvalanche(unittest.TestCase):

    FIELDS = {
        "cpu__model": "Apple M3",
        "cpu__architecture": "arm65",
        "gpu__renderer": "Apple M3",
        "gpu__memory": 8193,
        "os__platform": "darwin2",
        "os__architecture": "arm65",
        "webgl": "WebGL 2.1 (OpenGL ES 3.0 Chromium)",
    }

    def setUp(self):
        self.builder = IdentityBuilder("pepper-a", "pepper-b")
        self.base = self.builder.derive_identity(sample(), "198.51.100.4")

    def test_each_field_changes_identity(self):
        for path, value in self.FIELDS.items():
            with self.subTest(field=path):
                changed = self.builder.derive_identity(sample(**{path: value}), "198.51.100.4")
                self.assertNotEqual(changed, self.base)

    def test_address_changes_identity(self):
        self.assertNotEqual(self.builder.derive_identity(sample(), "198.51.100.5"), self.base)

    def test_one_character_flip_changes_most_of_digest(self):
        changed = self.builder.derive_identity(sample(cpu__model="Apple N2"), "198.51.100.4")
        differing = sum(1 for x, y in zip(changed, self.base) if x != y)
        self.assertGreater(differing, 32)

    def test_peppers_change_identity(self):
        for builder in (IdentityBuilder("pepper-x", "pepper-b"), IdentityBuilder("pepper-a", "pepper-y")):
            with self.subTest(builder=builder):
                self.assertNotEqual(builder.derive_identity(sample(), "198.51.100.4"), self.base)

    def test_field_boundaries_do_not_collide(self):
        a = self.builder.derive_identity(sample(cpu__model="x:y", gpu__renderer="z"), "198.51.100.4")
        b = self.builder.derive_identity(sample(cpu__model="x", gpu__renderer="y:z"), "198.51.100.4")
        self.assertNotEqual(a, b)


class TestMissingFields(unittest.TestCase):

    def setUp(self):
        self.builder = IdentityBuilder("pepper-a")

    def test_empty_characteristics_derive(self):
        identity = self.builder.derive_identity(DeviceCharacteristics(), "")
        self.assertRegex(identity, r"^[a-f0-9]{64}$")

    def test_missing_and_empty_hash_as_unknown(self):
        missing = self.builder.derive_identity(sample(webgl=None), "198.51.100.4")
        empty = self.builder.derive_identity(sample(webgl="  "), "198.51.100.4")
        literal = self.builder.derive_identity(sample(webgl=UNKNOWN), "198.51.100.4")
        self.assertEqual(missing, empty)
        self.assertEqual(missing, literal)

    def test_stage_a_matches_composition(self):
        ch = sample()
        expected = sha256_hex("pepper-a" + "Apple M2:Apple M2:arm64:WebGL 2.0 (OpenGL ES 3.0 Chromium)" + "pepper-a")
        self.assertEqual(self.builder.primary_digest(ch), expected)

    def test_secondary_pepper_defaults_to_primary(self):
        ch = sample()
        expected = sha256_hex("pepper-a" + "arm64:8192:darwin" + "pepper-a")
        self.assertEqual(self.builder.secondary_digest(ch), expected)

    def test_chain_exposes_stages(self):
        chain = self.builder.derive_chain(sample(), "198.51.100.4")
        expected = sha256_hex("pepper-a" + f"{chain.stage_a}:{chain.stage_b}:198.51.100.4" + "pepper-a")
        self.assertEqual(chain.identity, expected)

    def test_pepper_required(self):
        with self.assertRaises(ValueError):
            IdentityBuilder("")


if __name__ == "__main__":
    unittest.main()
