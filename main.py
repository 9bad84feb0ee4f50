from payrouter.config.logging import setup_logging
from payrouter.config.settings import get_settings
from payrouter.api import create_app
from payrouter.factories import (
    create_analytics,
    create_background_workers,
    create_delivery_tracker,
    create_provider_registry,
    create_redis_client,
    create_routing_engine,
    create_webhook_notifier,
)

# Setup logging first
setup_logging()

settings = get_settings()

# One pooled Redis client shared by every store
redis_client = create_redis_client(settings)

registry = create_provider_registry(settings, redis_client)
routing_engine = create_routing_engine(redis_client, registry)
delivery_tracker = create_delivery_tracker(settings, redis_client)
analytics = create_analytics(redis_client)

# Webhook retries and analytics retention run in the background
notifier = create_webhook_notifier(settings)
workers = create_background_workers(settings, delivery_tracker, notifier, analytics)

# Create the FastAPI app with all components
app = create_app(registry, routing_engine, delivery_tracker, analytics, workers, notifier)

# Add health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy"}


def main():
    import uvicorn
    from payrouter.config.logging import get_uvicorn_log_level

    # Get log level for uvicorn
    log_level = get_uvicorn_log_level()

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.app_port,
        log_level=log_level
    )


if __name__ == "__main__":
    main()
