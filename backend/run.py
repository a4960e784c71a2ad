#!/usr/bin/env python3
"""
Call Conversation Pipeline Run Script
Handles environment checks, database initialization, and server startup
"""

import argparse
import asyncio
import os
import subprocess
import sys

# Colors for terminal output
class Colors:
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    END = '\033[0m'
    BOLD = '\033[1m'

def print_info(message):
    print(f"{Colors.BLUE}ℹ️  {message}{Colors.END}")

def print_success(message):
    print(f"{Colors.GREEN}✅ {message}{Colors.END}")

def print_warning(message):
    print(f"{Colors.YELLOW}⚠️  {message}{Colors.END}")

def print_error(message):
    print(f"{Colors.RED}❌ {message}{Colors.END}")

def print_header(message):
    print(f"\n{Colors.BOLD}{Colors.BLUE}{'='*60}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.BLUE}{message.center(60)}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.BLUE}{'='*60}{Colors.END}\n")

def check_env_file():
    """Warn when no .env file is present; settings fall back to defaults."""
    if os.path.exists(".env"):
        print_success(".env file found")
    else:
        print_warning(".env file not found, using environment variables and defaults")

def check_provider_keys():
    """Report which upstream providers are configured."""
    from callintel.core.config import settings

    for name, value in (("DEEPGRAM_API_KEY", settings.DEEPGRAM_API_KEY),
                        ("OPENAI_API_KEY", settings.OPENAI_API_KEY)):
        if not value or value == "NOT_SET":
            print_warning(f"{name} is not set; jobs for that stage will fail and retry")
        else:
            print_success(f"{name} configured")

    if not settings.WEBHOOK_SECRET:
        print_warning("WEBHOOK_SECRET is not set; call webhooks will be rejected")

async def check_database_connection():
    """Check if database is accessible."""
    print_info("Checking database connection...")
    from callintel.db.database import check_db_connection

    if await check_db_connection():
        print_success("Database connection successful")
        return True
    print_error("Database connection failed")
    return False

async def init_database():
    """Initialize database tables."""
    print_info("Initializing database tables...")
    try:
        from callintel.db.database import init_db
        await init_db()
        print_success("Database tables initialized")
    except Exception as e:
        print_error(f"Failed to initialize database: {str(e)}")
        sys.exit(1)

def start_server(host="0.0.0.0", port=8000, reload=True):
    """Start the FastAPI server."""
    print_header("Starting Call Conversation Pipeline")

    print_info(f"Server starting on http://{host}:{port}")
    print_info(f"API documentation: http://localhost:{port}/docs")

    if reload:
        print_info("Running in development mode with auto-reload")

    try:
        cmd = [
            sys.executable, "-m", "uvicorn",
            "callintel.main:app",
            "--host", host,
            "--port", str(port)
        ]
        if reload:
            cmd.append("--reload")

        subprocess.run(cmd)
    except KeyboardInterrupt:
        print("\n" + Colors.YELLOW + "Server stopped by user" + Colors.END)

async def async_main(args):
    if not await check_database_connection():
        print_info("Please check your DATABASE_URL in .env file")
        sys.exit(1)

    await init_database()

    if args.init_only:
        print_success("Initialization completed successfully")
        sys.exit(0)

def main():
    parser = argparse.ArgumentParser(description="Call Conversation Pipeline Runner")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    parser.add_argument("--no-reload", action="store_true", help="Disable auto-reload")
    parser.add_argument("--skip-checks", action="store_true", help="Skip environment checks")
    parser.add_argument("--init-only", action="store_true", help="Only initialize database and exit")

    args = parser.parse_args()

    print_header("Call Conversation Pipeline Setup")

    if not args.skip_checks:
        check_env_file()
        check_provider_keys()

    asyncio.run(async_main(args))

    port = int(os.getenv("API_PORT", args.port))
    start_server(host=args.host, port=port, reload=not args.no_reload)

if __name__ == "__main__":
    main()
