#!/usr/bin/env python3
"""
Verify the Google Cloud Console OAuth client file
Checks that credentials.json is a Desktop app client before the backup tool uses it
"""

import argparse
import json
import sys
from pathlib import Path

from backup_errors import ProviderError

DEFAULT_CREDENTIALS_FILE = 'credentials.json'
REQUIRED_FIELDS = ('client_id', 'client_secret', 'redirect_uris', 'auth_uri', 'token_uri')


def load_client_config(path=DEFAULT_CREDENTIALS_FILE) -> dict:
    """Load and validate an installed-app OAuth client configuration."""
    credentials_path = Path(path)
    if not credentials_path.exists():
        raise ProviderError(f"{credentials_path} not found. Please download it from Google Cloud Console.")

    try:
        with open(credentials_path, 'r') as f:
            credentials = json.load(f)
    except json.JSONDecodeError as e:
        raise ProviderError(f"{credentials_path} is not valid JSON: {e}") from e
    except OSError as e:
        raise ProviderError(f"Could not read {credentials_path}: {e}") from e

    # Desktop app clients keep everything under the 'installed' key
    if not isinstance(credentials, dict) or 'installed' not in credentials:
        raise ProviderError(f"{credentials_path} is not a Desktop app OAuth client")

    installed_data = credentials['installed']
    if not isinstance(installed_data, dict):
        raise ProviderError(f"{credentials_path} has a malformed 'installed' object")
    missing_fields = [field for field in REQUIRED_FIELDS if field not in installed_data]
    if missing_fields:
        raise ProviderError(
            f"Missing required fields in 'installed' object: {', '.join(missing_fields)}"
        )

    return credentials


def verify_credentials_file(path=DEFAULT_CREDENTIALS_FILE) -> bool:
    """Verify the credentials file and print what was found."""
    print("🔍 Google Cloud Console Credentials Verifier")
    print("=" * 50)

    try:
        credentials = load_client_config(path)
    except ProviderError as e:
        print(f"❌ {e}")
        print("\n📝 To fix this:")
        print("1. Go to https://console.cloud.google.com/")
        print("2. Navigate to 'APIs & Services' > 'Credentials'")
        print("3. Click '+ CREATE CREDENTIALS'")
        print("4. Select 'OAuth 2.0 client IDs'")
        print("5. Choose 'Desktop app' as application type")
        print("6. Download the JSON file")
        print(f"7. Save it as '{path}'")
        return False

    installed_data = credentials['installed']
    print(f"✅ {path} found and valid")
    print("\n📋 Credential Information:")
    print(f"   Client ID: {installed_data['client_id'][:20]}...")
    print("   Application Type: Desktop app")
    print(f"   Redirect URIs: {installed_data['redirect_uris']}")
    return True


def main(argv=None):
    """Main function."""
    parser = argparse.ArgumentParser(description='Verify the OAuth client file used by drive-backup')
    parser.add_argument('path', nargs='?', default=DEFAULT_CREDENTIALS_FILE, help='Path to the client secrets file')
    args = parser.parse_args(argv)

    success = verify_credentials_file(args.path)

    if success:
        print("\n🚀 Next steps:")
        print("   drive-backup auth-test               # Check sign-in")
        print("   drive-backup backup --file PATH      # Upload a file")
    else:
        print("\n❌ Please fix the issues above before proceeding.")
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
