from apps import api

from apps.api import (RecordCreateRequest, RecordResponse, RecordUpdateRequest,
                      app, create_app, get_caller,)

__all__ = ['RecordCreateRequest', 'RecordResponse', 'RecordUpdateRequest',
           'api', 'app', 'create_app', 'get_caller']
