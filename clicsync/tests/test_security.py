from clicsync.app.security import generate_sync_token, hash_sync_token


def test_sync_tokens_are_prefixed_and_unique():
    a = generate_sync_token()
    b = generate_sync_token()
    assert a.startswith("sync_")
    assert len(a) > 20
    assert a != b


def test_sync_token_hash_is_stable_and_one_way():
    tok = "secret"
    h = hash_sync_token(tok)
    assert h != tok
    assert len(h) == 64
    assert hash_sync_token(tok) == h
    assert hash_sync_token("wrong") != h
