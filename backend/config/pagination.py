from django.conf import settings
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class OptionalPageNumberPagination(PageNumberPagination):
    page_size = settings.API_PAGE_SIZE
    page_size_query_param = "page_size"
    max_page_size = settings.API_MAX_PAGE_SIZE


class OptionalPaginationListMixin:
    """List endpoints return a plain array unless the client asks for a page.

    Template and assignment pickers in the editor load everything at once;
    admin tables pass ``page`` or ``page_size`` and get the paginated envelope.
    """

    pagination_class = OptionalPageNumberPagination
    pagination_query_params = ("page", "page_size")

    def wants_page(self, request) -> bool:
        return any(param in request.query_params for param in self.pagination_query_params)

    def list(self, request, *args, **kwargs):
        queryset = self.filter_queryset(self.get_queryset())
        if self.wants_page(request):
            page = self.paginate_queryset(queryset)
            if page is not None:
                serializer = self.get_serializer(page, many=True)
                return self.get_paginated_response(serializer.data)

        serializer = self.get_serializer(queryset, many=True)
        return Response(serializer.data)
