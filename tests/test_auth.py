import auth
import db


def test_hash_and_verify():
    hashed = auth.hash_password("s3cret!")
    assert hashed.startswith("$2")
    assert auth.verify_password("s3cret!", hashed)
    assert not auth.verify_password("wrong", hashed)


def test_long_passwords_are_truncated_to_72_bytes():
    hashed = auth.hash_password("x" * 72 + "tail")
    assert auth.verify_password("x" * 72 + "different", hashed)


def test_verify_rejects_missing_or_malformed_hash():
    assert not auth.verify_password("anything", None)
    assert not auth.verify_password("anything", "not-a-bcrypt-hash")


def test_admin_login_and_change_password(database):
    db.execute("UPDATE admin_users SET password_hash = ? WHERE username = 'admin'", (auth.hash_password("admin123"),))
    assert auth.login("admin", "admin123")
    assert not auth.login("nobody", "admin123")

    auth.change_password("admin", "n3w-pass")
    assert auth.login("admin", "n3w-pass")
    assert not db.is_force_password_change()


def test_member_login(member_id):
    assert auth.member_login("A-101", "pw123456") is None
    auth.set_member_password(member_id, "pw123456")
    member = auth.member_login("A-101", "pw123456")
    assert member["id"] == member_id
    assert auth.member_login("A-101", "nope") is None
    assert auth.member_login("Z-9", "pw123456") is None


def test_validate_new_password():
    assert auth.validate_new_password("abcdef", "abcdef") == []
    assert auth.validate_new_password("abc", "abd") == [
        "Password must be at least 6 characters.",
        "Passwords do not match.",
    ]
