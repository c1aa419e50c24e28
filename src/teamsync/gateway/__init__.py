"""Remote store gateway."""

from .remote import RemoteStoreGateway, filter_params

__all__ = ['RemoteStoreGateway', 'filter_params']
