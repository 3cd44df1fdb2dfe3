from apps.api.main import (RecordCreateRequest, RecordResponse,
                           RecordUpdateRequest, app, create_app, get_caller,)

__all__ = ['RecordCreateRequest', 'RecordResponse', 'RecordUpdateRequest',
           'app', 'create_app', 'get_caller']
