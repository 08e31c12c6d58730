import os

from app import configure_logging, create_app


def main():
    configure_logging()
    app = create_app()

    host = os.getenv('HOST', '127.0.0.1')
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('DEBUG', 'False').lower() == 'true'

    settings = app.extensions["listings_service"].settings
    print(f"Starting listings aggregator on {host}:{port}")
    print(f"  Upstream credentials configured: {settings.has_credentials}")
    print(f"  Distributed store: {'redis' if settings.redis_url else 'in-process'}")

    if not settings.has_credentials:
        print("\n[WARN] LISTINGS_CLIENT_ID / LISTINGS_CLIENT_SECRET missing; only cached pages can be served.")

    print(f"\nAccess URL: http://{host}:{port}/listings?channel=pics&sort=hot")

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == '__main__':
    main()
