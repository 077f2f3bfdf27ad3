"""Tests for the RFC 3526 groups and the Fiat-Shamir transcript."""

import pytest

from freeghost_core.zk_group import (
    Transcript,
    get_group,
    is_probable_prime,
    pi_fixed_point,
    rfc3526_prime,
)

MODP_2048_HEX = (
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF"
)


class TestPrimeConstruction:
    """Primes are built from their published definition."""

    def test_pi_prefix(self):
        # floor(pi * 2^32)
        assert pi_fixed_point(32) == 0x3243F6A88

    def test_2048_bit_prime_matches_published_value(self):
        assert rfc3526_prime(2048) == int(MODP_2048_HEX, 16)

    def test_unknown_size(self):
        with pytest.raises(ValueError):
            rfc3526_prime(1024)

    def test_3072_bit_group_is_safe_prime_group(self):
        group = get_group(3072)
        assert group.p.bit_length() == 3072
        assert group.p == 2 * group.q + 1
        assert is_probable_prime(group.p, rounds=4)
        assert is_probable_prime(group.q, rounds=4)
        assert pow(group.g, group.q, group.p) == 1

    def test_group_is_cached(self):
        assert get_group(3072) is get_group(3072)

    def test_miller_rabin_small_values(self):
        assert is_probable_prime(2)
        assert is_probable_prime(7919)
        assert not is_probable_prime(7917)
        assert not is_probable_prime(1)


class TestGroupOperations:
    """Subgroup membership and hashing."""

    def test_membership(self):
        group = get_group(3072)
        assert group.is_element(group.g)
        assert not group.is_element(1)
        assert not group.is_element(group.p - 1)  # order 2
        assert not group.is_element(group.p)

    def test_hash_to_element_lands_in_subgroup(self):
        group = get_group(3072)
        element = group.hash_to_element(b"label", b"a", b"b")
        assert group.is_element(element)
        assert element == group.hash_to_element(b"label", b"a", b"b")
        assert element != group.hash_to_element(b"label", b"ab")

    def test_inverse(self):
        group = get_group(3072)
        element = group.exp(group.g, 12345)
        assert group.mul(element, group.inverse(element)) == 1


class TestTranscript:
    """Fiat-Shamir transcript."""

    def test_deterministic(self):
        def run():
            t = Transcript(b"demo", "sha3_256")
            t.append(b"msg", b"hello")
            t.append_ints(b"values", [1, 2, 3])
            return t.challenge_scalar(2**255)

        assert run() == run()

    def test_length_prefixing_separates_entries(self):
        a = Transcript(b"demo", "sha3_256")
        a.append(b"x", b"ab")
        a.append(b"y", b"c")
        b = Transcript(b"demo", "sha3_256")
        b.append(b"x", b"a")
        b.append(b"y", b"bc")
        assert a.challenge_scalar(2**255) != b.challenge_scalar(2**255)

    def test_unknown_hash(self):
        from freeghost_core.exceptions import ProofGenerationError

        with pytest.raises(ProofGenerationError):
            Transcript(b"demo", "no-such-hash")
