import unittest

from cyra_vault.cipher import (
    IV_LENGTH,
    KEY_LENGTH,
    TAG_LENGTH,
    AesGcmCipher,
    KeyMaterial,
)
from cyra_vault.errors import AuthenticationFailure, InvalidKeyMaterial


def flip_bit(data: bytes, index: int = 0) -> bytes:
    mutable = bytearray(data)
    mutable[index] ^= 0x01
    return bytes(mutable)


class AesGcmCipherTests(unittest.TestCase):
    def setUp(self):
        self.cipher = AesGcmCipher()

    def test_roundtrip(self):
        for plaintext in (b"", b"a", b'{"mood":"calm"}', bytes(range(256)) * 10):
            envelope = self.cipher.encrypt(plaintext)
            self.assertEqual(len(envelope.key), KEY_LENGTH)
            self.assertEqual(len(envelope.iv), IV_LENGTH)
            self.assertEqual(len(envelope.tag), TAG_LENGTH)
            self.assertEqual(len(envelope.ciphertext), len(plaintext))
            self.assertEqual(
                self.cipher.decrypt(
                    envelope.ciphertext, envelope.iv, envelope.tag, envelope.key
                ),
                plaintext,
            )

    def test_combined_appends_tag(self):
        envelope = self.cipher.encrypt(b"hello")
        self.assertEqual(envelope.combined, envelope.ciphertext + envelope.tag)

    def test_tampering_is_detected(self):
        envelope = self.cipher.encrypt(b"secret planning data")
        cases = {
            "ciphertext": (flip_bit(envelope.ciphertext, 3), envelope.iv, envelope.tag, envelope.key),
            "iv": (envelope.ciphertext, flip_bit(envelope.iv), envelope.tag, envelope.key),
            "tag": (envelope.ciphertext, envelope.iv, flip_bit(envelope.tag, 15), envelope.key),
            "key": (envelope.ciphertext, envelope.iv, envelope.tag, flip_bit(envelope.key)),
        }
        for name, args in cases.items():
            with self.subTest(field=name):
                with self.assertRaises(AuthenticationFailure):
                    self.cipher.decrypt(*args)

    def test_fresh_key_and_iv_per_call(self):
        plaintext = b"same input every time"
        envelopes = [self.cipher.encrypt(plaintext) for _ in range(100)]
        self.assertEqual(len({e.ciphertext for e in envelopes}), 100)
        self.assertEqual(len({e.iv for e in envelopes}), 100)
        self.assertEqual(len({e.key for e in envelopes}), 100)

    def test_wrong_lengths_are_invalid_key_material(self):
        envelope = self.cipher.encrypt(b"x")
        with self.assertRaises(InvalidKeyMaterial):
            self.cipher.decrypt(envelope.ciphertext, envelope.iv, envelope.tag, envelope.key[:16])
        with self.assertRaises(InvalidKeyMaterial):
            self.cipher.decrypt(envelope.ciphertext, envelope.iv + b"\x00", envelope.tag, envelope.key)
        with self.assertRaises(InvalidKeyMaterial):
            self.cipher.decrypt(envelope.ciphertext, envelope.iv, envelope.tag[:12], envelope.key)


class KeyMaterialTests(unittest.TestCase):
    def test_json_roundtrip(self):
        envelope = AesGcmCipher().encrypt(b"x")
        material = envelope.key_material
        self.assertEqual(KeyMaterial.from_json(material.to_json()), material)
        self.assertIn('"aesKey"', material.to_json())

    def test_repr_does_not_expose_key(self):
        envelope = AesGcmCipher().encrypt(b"x")
        self.assertNotIn(envelope.key.hex(), repr(envelope.key_material))
        self.assertNotIn(envelope.key.hex(), repr(envelope))

    def test_rejects_bad_documents(self):
        good = AesGcmCipher().encrypt(b"x").key_material.to_json()
        bad_documents = [
            "not json",
            "[]",
            '{"aesKey": "AAAA", "iv": "AAAA"}',
            good[:-1] + ',"extra":"x"}',
            '{"aesKey": "***", "iv": "AAAA", "tag": "AAAA"}',
            '{"aesKey": "AAAA", "iv": "AAAAAAAAAAAAAAAA", "tag": "AAAAAAAAAAAAAAAAAAAAAA=="}',
        ]
        for raw in bad_documents:
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidKeyMaterial):
                    KeyMaterial.from_json(raw)


if __name__ == "__main__":
    unittest.main()
