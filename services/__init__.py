"""Services layer.

Protocol logic for Foundry Local, shared by the provider adapters:
    services.endpoint_locator - endpoint discovery and caching
    services.catalog - catalog normalisation and local/catalog merge
    services.chat_stream - streamed completion translation
    services.model_lifecycle - model download and delete
"""
