import pytest

from walletsvc.pagination import Pagination, offset_and_limit, pagination_info


def test_no_pagination_means_everything():
    assert offset_and_limit(None) == (0, 0)
    assert offset_and_limit(Pagination(page=4, page_size=0)) == (0, 0)


def test_first_page_starts_at_zero():
    assert offset_and_limit(Pagination(page=1, page_size=25)) == (0, 25)


def test_pages_below_one_are_the_first_page():
    assert offset_and_limit(Pagination(page=0, page_size=10)) == offset_and_limit(
        Pagination(page=1, page_size=10)
    )


@pytest.mark.parametrize("size", [1, 7, 50])
def test_consecutive_pages_advance_by_page_size(size):
    first, _ = offset_and_limit(Pagination(page=3, page_size=size))
    second, limit = offset_and_limit(Pagination(page=4, page_size=size))
    assert second - first == size
    assert limit == size


def test_pagination_info_carries_request():
    request = Pagination(page=2, page_size=5)
    info = pagination_info(request, 12, 5)
    assert (info.page, info.page_size, info.total, info.offset) == (2, 5, 12, 5)


def test_pagination_info_rejects_negative_total():
    with pytest.raises(ValueError):
        pagination_info(Pagination(), -1, 0)