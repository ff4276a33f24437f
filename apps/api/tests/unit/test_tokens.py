"""Transaction id generation."""

from subgate_api.billing.tokens import generate_payment_token, is_payment_token


def test_generated_tokens_are_well_formed_and_unique():
    tokens = {generate_payment_token() for _ in range(200)}
    assert len(tokens) == 200
    assert all(is_payment_token(t) for t in tokens)


def test_is_payment_token_rejects_other_shapes():
    assert not is_payment_token("")
    assert not is_payment_token("pay_123_abc")
    assert not is_payment_token("txn_1760000000000_" + "a" * 32)
    assert not is_payment_token("pay_1760000000000_" + "A" * 32)
    assert not is_payment_token("pay_1760000000000_" + "a" * 32 + "/../x")
    assert is_payment_token("pay_1760000000000_" + "0f" * 16)
