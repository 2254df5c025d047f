"""
API Handlers for the Edition Engine.

Provides REST endpoints for:
- Collections (create, read, status, publish, airdrop, synthesize)
- Editions (read, purchase, consign, open, transfer, status)
- Holdings, purchases and sales of the logged-in user
"""
from typing import Optional, Dict, Any

from aiohttp import web
from navigator.views import BaseView
from datamodel.exceptions import ValidationError
from pydantic import ValidationError as CallerError
from navconfig.logging import logging

from .caller import Caller
from .exceptions import EditionError
from .models import (
    CollectionType,
    CreateCollectionRequest,
    CollectionStatusRequest,
    PublishRequest,
    ConsignRequest,
    PurchaseRequest,
    OpenBoxRequest,
    AirdropRequest,
    SynthesizeRequest,
    TransferRequest,
    EditionStatusRequest,
)
from .service import EditionService, get_service


API_PREFIX = '/editions/api/v1'

logger = logging.getLogger('Editions.Handlers')


def _error_statuses(cls=EditionError, statuses=None) -> Dict[str, int]:
    statuses = {} if statuses is None else statuses
    for sub in cls.__subclasses__():
        statuses[sub.code] = sub.status
        _error_statuses(sub, statuses)
    return statuses


ERROR_STATUS = _error_statuses()
ERROR_STATUS['partial_airdrop'] = 207


class EditionBaseView(BaseView):
    """Shared helpers for the edition handlers."""

    async def _get_caller(self) -> Optional[Caller]:
        session = await self.get_session()
        if not session:
            return None
        try:
            return Caller.from_session(session)
        except CallerError:
            return None

    def _get_service(self) -> EditionService:
        return get_service(self.request.app)

    async def _payload(self) -> Dict[str, Any]:
        if not self.request.can_read_body:
            return {}
        return await self.request.json()

    def _result_response(self, result, body: Dict[str, Any], status: int = 200):
        if result.success:
            return self.json_response(body, status=status)
        code = ERROR_STATUS.get(result.error_code, 400)
        if code == 207:
            return self.json_response(body, status=code)
        return self.error(
            message=result.error,
            status=code
        )


class CollectionHandler(EditionBaseView):
    """
    Handler for collections.

    Endpoints:
        POST /editions/api/v1/collections - Create a collection
        GET /editions/api/v1/collections/{collection_id} - Collection details
        POST /editions/api/v1/collections/{collection_id}/status - Change status
        POST /editions/api/v1/collections/{collection_id}/publish - Publish editions
        POST /editions/api/v1/collections/{collection_id}/airdrop - Airdrop editions
        POST /editions/api/v1/collections/{collection_id}/synthesize - Synthesize (admin)
    """

    async def get(self):
        collection_id = self.request.match_info.get('collection_id')
        collection = await self._get_service().get_collection(collection_id)
        if not collection:
            return self.not_found(
                message=f"Collection {collection_id} not found"
            )
        return self.json_response(collection.as_dict())

    async def post(self):
        collection_id = self.request.match_info.get('collection_id')
        action = self.request.match_info.get('action')
        try:
            caller = await self._get_caller()
            if caller is None:
                return self.not_authorized(message="Login required")
            data = await self._payload()
            service = self._get_service()

            if collection_id is None:
                result = await service.create_collection(
                    caller,
                    CreateCollectionRequest(**data)
                )
                return self._result_response(
                    result,
                    {
                        'collection': result.collection.as_dict() if result.collection else None,
                        'message': result.message
                    },
                    status=201
                )

            data['collection_id'] = collection_id
            if action == 'status':
                result = await service.set_collection_status(
                    caller,
                    CollectionStatusRequest(**data)
                )
                body = {
                    'collection': result.collection.as_dict() if result.collection else None,
                    'cascaded': [e.sub_id for e in result.editions],
                    'message': result.message
                }
            elif action == 'publish':
                result = await service.publish(caller, PublishRequest(**data))
                body = {
                    'editions': [e.as_dict() for e in result.editions],
                    'message': result.message
                }
            elif action == 'airdrop':
                result = await service.airdrop(caller, AirdropRequest(**data))
                body = {
                    'delivered': result.delivered,
                    'failed': result.failed,
                    'message': result.message
                }
            elif action == 'synthesize':
                result = await service.synthesize(caller, SynthesizeRequest(**data))
                body = {
                    'editions': [e.as_dict() for e in result.editions],
                    'message': result.message
                }
            else:
                return self.not_found(message=f"Unknown action {action}")
            return self._result_response(result, body)

        except ValidationError as err:
            return self.error(message=str(err.payload), status=400)
        except (ValueError, TypeError) as err:
            return self.error(message=str(err), status=400)
        except EditionError as err:
            return self.error(message=str(err), status=err.status)
        except Exception as err:
            logger.exception(f"Collection {action or 'create'} failed: {err}")
            return self.error(message=str(err), status=500)


class EditionHandler(EditionBaseView):
    """
    Handler for editions.

    Endpoints:
        GET /editions/api/v1/collections/{collection_id}/editions - List editions
        GET /editions/api/v1/collections/{collection_id}/editions/{sub_id} - Edition details
        POST /editions/api/v1/collections/{collection_id}/editions/{sub_id}/purchase
        POST /editions/api/v1/collections/{collection_id}/editions/{sub_id}/consign
        POST /editions/api/v1/collections/{collection_id}/editions/{sub_id}/open
        POST /editions/api/v1/collections/{collection_id}/editions/{sub_id}/transfer
        POST /editions/api/v1/collections/{collection_id}/editions/{sub_id}/status
    """

    async def get(self):
        collection_id = self.request.match_info.get('collection_id')
        sub_id = self.request.match_info.get('sub_id')
        service = self._get_service()
        if sub_id:
            edition = await service.get_edition(collection_id, sub_id)
            if not edition:
                return self.not_found(
                    message=f"Edition {collection_id}#{sub_id} not found"
                )
            return self.json_response(edition.as_dict())
        params = self.request.rel_url.query
        statuses = None
        if params.get('status'):
            try:
                statuses = [int(s) for s in params['status'].split(',')]
            except ValueError:
                return self.error(message="status must be a list of codes", status=400)
        editions = await service.list_editions(collection_id, statuses=statuses)
        return self.json_response({
            'editions': [e.as_dict() for e in editions],
            'count': len(editions)
        })

    async def post(self):
        collection_id = self.request.match_info.get('collection_id')
        sub_id = self.request.match_info.get('sub_id')
        action = self.request.match_info.get('action')
        try:
            caller = await self._get_caller()
            if caller is None:
                return self.not_authorized(message="Login required")
            data = await self._payload()
            data['collection_id'] = collection_id
            service = self._get_service()

            if action == 'status':
                data['sub_ids'] = [sub_id]
                result = await service.set_edition_status(
                    caller,
                    EditionStatusRequest(**data)
                )
                return self._result_response(
                    result,
                    {
                        'edition': result.editions[0].as_dict() if result.editions else None,
                        'message': result.message
                    }
                )

            data['sub_id'] = sub_id
            if action == 'purchase':
                result = await service.purchase(caller, PurchaseRequest(**data))
            elif action == 'consign':
                result = await service.consign(caller, ConsignRequest(**data))
            elif action == 'transfer':
                result = await service.transfer(caller, TransferRequest(**data))
            elif action == 'open':
                result = await service.open_box(caller, OpenBoxRequest(**data))
                return self._result_response(
                    result,
                    {
                        'box': result.box.as_dict() if result.box else None,
                        'nft_id': result.nft_id,
                        'received': result.received.as_dict() if result.received else None,
                        'message': result.message
                    }
                )
            else:
                return self.not_found(message=f"Unknown action {action}")
            return self._result_response(
                result,
                {
                    'edition': result.edition.as_dict() if result.edition else None,
                    'message': result.message
                }
            )

        except ValidationError as err:
            return self.error(message=str(err.payload), status=400)
        except (ValueError, TypeError) as err:
            return self.error(message=str(err), status=400)
        except EditionError as err:
            return self.error(message=str(err), status=err.status)
        except Exception as err:
            logger.exception(f"Edition {action} failed: {err}")
            return self.error(message=str(err), status=500)


class AccountHandler(EditionBaseView):
    """
    Holdings and trades of the logged-in user.

    Endpoints:
        GET /editions/api/v1/me/editions - Held editions (?collection_id=, ?kind=)
        GET /editions/api/v1/me/boxes - Held mystery box instances
        GET /editions/api/v1/me/purchases - Purchases, newest first
        GET /editions/api/v1/me/sales - Sales, newest first
    """

    async def get(self):
        view = self.request.match_info.get('view')
        caller = await self._get_caller()
        if caller is None:
            return self.not_authorized(message="Login required")
        service = self._get_service()
        params = self.request.rel_url.query

        if view in ('editions', 'boxes'):
            kind = CollectionType.MYSTERY_BOX if view == 'boxes' else None
            if params.get('kind'):
                try:
                    kind = int(params['kind'])
                except ValueError:
                    return self.error(message="kind must be a collection type code", status=400)
            editions = await service.list_owned(
                caller,
                collection_id=params.get('collection_id'),
                kind=kind
            )
            return self.json_response({
                'editions': [e.as_dict() for e in editions],
                'count': len(editions)
            })
        if view == 'purchases':
            trades = await service.list_purchases(caller)
        elif view == 'sales':
            trades = await service.list_sales(caller)
        else:
            return self.not_found(message=f"Unknown view {view}")
        return self.json_response({'transactions': trades, 'count': len(trades)})


# ============================================================================
# ROUTE SETUP
# ============================================================================

def setup_edition_routes(app: web.Application, service: EditionService = None):
    """
    Setup all edition engine routes.

    Args:
        app: aiohttp Application
        service: Optional pre-built service (defaults to a PgStore over
            ``app['database']``)
    """
    if service is not None:
        app['edition_service'] = service

    # Collections
    app.router.add_post(
        f'{API_PREFIX}/collections',
        CollectionHandler
    )
    app.router.add_get(
        f'{API_PREFIX}/collections/{{collection_id}}',
        CollectionHandler
    )
    app.router.add_post(
        f'{API_PREFIX}/collections/{{collection_id}}/{{action}}',
        CollectionHandler
    )

    # Editions
    app.router.add_get(
        f'{API_PREFIX}/collections/{{collection_id}}/editions',
        EditionHandler
    )
    app.router.add_get(
        f'{API_PREFIX}/collections/{{collection_id}}/editions/{{sub_id}}',
        EditionHandler
    )
    app.router.add_post(
        f'{API_PREFIX}/collections/{{collection_id}}/editions/{{sub_id}}/{{action}}',
        EditionHandler
    )

    # Caller holdings
    app.router.add_get(
        f'{API_PREFIX}/me/{{view}}',
        AccountHandler
    )
