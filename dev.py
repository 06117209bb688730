#!/usr/bin/env python3

"""
Development utility for the MCP OAuth Authorization Server
"""

import argparse
import os
import secrets
import subprocess
import sys
from pathlib import Path

REQUIRED_PRODUCTION_VARS = ["SECRET_KEY", "BASE_URL"]
OPTIONAL_VARS = ["DATABASE_URL", "REDIS_URL", "IDENTITY_HEADER", "LOGIN_URL", "MCP_API_KEY"]


def run_server():
    """Run development server"""
    print("🚀 Starting development server...")
    env = os.environ.copy()
    env.setdefault("ENVIRONMENT", "development")
    env.setdefault("BASE_URL", "http://localhost:8000")
    subprocess.run([sys.executable, "main.py"], env=env, check=False)


def run_tests():
    """Run the test suite"""
    print("🧪 Running tests...")
    result = subprocess.run([sys.executable, "-m", "pytest", "tests", "-v"], check=False)
    return result.returncode == 0


def generate_secret_key():
    """Generate secure secret key"""
    secret_key = secrets.token_urlsafe(32)
    print(f"🔑 Generated secret key: {secret_key}")
    print("   Add this to your environment as SECRET_KEY")
    return secret_key


def check_env():
    """Check environment configuration"""
    print("🔍 Checking environment configuration...")

    environment = os.getenv("ENVIRONMENT", "production")
    missing_production = []
    if environment == "production":
        missing_production = [var for var in REQUIRED_PRODUCTION_VARS if not os.getenv(var)]
        if missing_production:
            print(f"❌ Missing required production variables: {', '.join(missing_production)}")

        base_url = os.getenv("BASE_URL", "")
        if base_url and not base_url.startswith("https://"):
            print("❌ BASE_URL must use HTTPS in production")
            missing_production.append("BASE_URL")

    if not missing_production:
        print("✅ Environment configuration looks good!")

    print("\n📋 Current configuration:")
    print(f"   Environment: {environment}")
    print(f"   Host: {os.getenv('HOST', '0.0.0.0')}")
    print(f"   Port: {os.getenv('PORT', '8000')}")
    print(f"   Base URL: {os.getenv('BASE_URL', 'http://localhost:8000')}")
    for var in OPTIONAL_VARS:
        print(f"   {var}: {'set' if os.getenv(var) else 'not set'}")

    if not os.getenv("REDIS_URL"):
        print("⚠️  REDIS_URL not set - authorization codes are kept in process memory (single worker only)")

    return len(missing_production) == 0


def status(base_url):
    """Show server status"""
    print("📊 Server Status:")

    try:
        import httpx

        response = httpx.get(f"{base_url}/health", timeout=5)
        health = response.json()
        print("✅ Server is running")
        print(f"   Status: {health.get('status')}")
        print(f"   Version: {health.get('version')}")
        print(f"   Environment: {health.get('environment')}")
        print(f"   Components: {health.get('components')}")
        return True
    except Exception as e:
        print(f"❌ Server is not reachable at {base_url}: {e}")
        return False


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Development utility for the MCP OAuth Authorization Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Available commands:
  run         Run development server
  test        Run tests
  secret      Generate secure secret key
  check       Check environment configuration
  status      Show server status

Examples:
  python dev.py run          # Run development server
  python dev.py test         # Run tests
  python dev.py status --url http://localhost:8000
        """
    )

    parser.add_argument(
        "command",
        choices=["run", "test", "secret", "check", "status"],
        help="Command to execute"
    )
    parser.add_argument(
        "--url",
        default=os.getenv("BASE_URL", "http://localhost:8000"),
        help="Base URL of the server for the status command"
    )

    args = parser.parse_args()

    # Change to script directory
    os.chdir(Path(__file__).parent)

    print("🛠️  MCP OAuth Authorization Server - Development Utility")
    print("=" * 60)

    success = True
    if args.command == "run":
        run_server()
    elif args.command == "test":
        success = run_tests()
    elif args.command == "secret":
        generate_secret_key()
    elif args.command == "check":
        success = check_env()
    elif args.command == "status":
        success = status(args.url.rstrip("/"))
    else:
        parser.print_help()

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
