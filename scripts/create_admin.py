from __future__ import annotations

import argparse
import getpass
import traceback

from room_booking import UserYamlRepository, load_config
from room_booking.auth import hash_password, normalize_email
from room_booking.yaml_store import ROLE_ADMIN


def main() -> int:
    parser = argparse.ArgumentParser(description="Create an administrator or promote an existing user.")
    parser.add_argument("email")
    parser.add_argument("--password", help="prompted for when omitted and the user does not exist yet")
    args = parser.parse_args()

    config = load_config()
    users = UserYamlRepository(config.data_dir)
    email = normalize_email(args.email)

    existing = users.find_by_email(email)
    if existing is not None:
        promoted = users.set_role(existing.user_id, ROLE_ADMIN)
        print(f"[OK] Promoted {promoted.email} to admin ({promoted.user_id})")
        print("[INFO] Tokens issued before this change keep their old role until they expire.")
        return 0

    password = args.password or getpass.getpass("Password: ")
    if not password:
        print("[ERROR] A password is required to create a new user.")
        return 2

    created = users.add_user(email, hash_password(password), role=ROLE_ADMIN)
    print(f"[OK] Created admin {created.email} ({created.user_id})")
    print(f"[OK] Users YAML: {users.users_file.resolve()}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception:
        print("[ERROR] create_admin failed.")
        traceback.print_exc()
        raise SystemExit(1)
