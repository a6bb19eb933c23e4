"""Tests for the operation queue."""

import pytest

from server.apps.uploads.entities import (
    OperationStatus,
    OperationType,
    QueuedFileStatus,
)
from server.apps.uploads.exceptions import InvalidStatusTransitionError
from server.apps.uploads.logic.upload_queue import UploadQueue


def _complete(queue, operation_id):
    queue.update_operation_status(operation_id, OperationStatus.PROCESSING)
    queue.update_operation_status(operation_id, OperationStatus.COMPLETED)


def _fail(queue, operation_id, message='boom'):
    queue.update_operation_status(operation_id, OperationStatus.PROCESSING)
    queue.update_operation_status(operation_id, OperationStatus.ERROR, message)


class TestQueueing:
    """Tests for adding operations."""

    def test_queue_upload_creates_pending_operation(self, queue, make_image):
        """Test uploaded images are pending and get a preview."""
        image = make_image()

        queued = queue.queue_upload(image, 'hero', 'gallery')

        operation = queue.get_operation(queued.id)
        assert operation.type == OperationType.UPLOAD
        assert operation.status == OperationStatus.PENDING
        assert operation.file is image
        assert operation.component_id == 'hero'
        assert operation.field_name == 'gallery'
        assert queued.preview_url == operation.preview_url
        assert queued.preview_url.startswith('preview://')

    def test_non_image_upload_has_no_preview(self, queue, previews, text_file):
        """Test previews are only created for images."""
        queued = queue.queue_upload(text_file)

        assert queued.preview_url is None
        assert previews.created == []

    def test_preview_failure_still_queues(self, make_image):
        """Test a failing preview factory does not block queueing."""
        def broken_factory(file):
            raise OSError('cannot decode')

        queue = UploadQueue(preview_factory=broken_factory)

        queued = queue.queue_upload(make_image())

        assert queued.preview_url is None
        assert queue.get_operation(queued.id) is not None

    def test_queue_deletion(self, queue):
        """Test deletions carry the target URL."""
        url = 'https://cdn.example.com/cms-uploads/a.jpg'

        operation_id = queue.queue_deletion(url, 'hero', 'gallery')

        operation = queue.get_operation(operation_id)
        assert operation.type == OperationType.DELETE
        assert operation.target_url == url
        assert operation.file is None
        assert operation.preview is None

    def test_operations_keep_insertion_order(self, queue, text_file):
        """Test operations are listed in the order they were queued."""
        first = queue.queue_upload(text_file).id
        second = queue.queue_deletion('https://cdn.example.com/a.jpg')
        third = queue.queue_upload(text_file).id

        ids = [op.id for op in queue.get_all_operations()]
        assert ids == [first, second, third]

    def test_generated_ids_are_unique(self, queue):
        """Test 10,000 rapid insertions produce distinct IDs."""
        ids = {
            queue.queue_deletion(f'https://cdn.example.com/{index}.jpg')
            for index in range(10_000)
        }

        assert len(ids) == 10_000


class TestRemoval:
    """Tests for removing operations."""

    def test_remove_operation_releases_preview(self, queue, previews, make_image):
        """Test removing an upload releases its preview."""
        queued = queue.queue_upload(make_image())

        assert queue.remove_operation(queued.id) is True

        assert queue.get_operation(queued.id) is None
        assert previews.released == [queued.preview_url]

    def test_remove_unknown_operation(self, queue):
        """Test removing a missing ID is a no-op."""
        assert queue.remove_operation('missing') is False

    def test_processing_operation_cannot_be_removed(self, queue, text_file):
        """Test in-flight operations stay in the queue."""
        queued = queue.queue_upload(text_file)
        queue.update_operation_status(queued.id, OperationStatus.PROCESSING)

        assert queue.remove_operation(queued.id) is False
        assert queue.get_operation(queued.id) is not None

    def test_clear_completed_keeps_other_statuses(self, queue, previews, make_image):
        """Test clear_completed only drops completed operations."""
        done = queue.queue_upload(make_image(name='done.jpg'))
        failed = queue.queue_upload(make_image(name='failed.jpg'))
        waiting = queue.queue_upload(make_image(name='waiting.jpg'))
        _complete(queue, done.id)
        _fail(queue, failed.id)

        queue.clear_completed()

        remaining = {op.id for op in queue.get_all_operations()}
        assert remaining == {failed.id, waiting.id}
        assert previews.released == [done.preview_url]

    def test_clear_errors(self, queue, text_file):
        """Test clear_errors only drops failed operations."""
        failed = queue.queue_upload(text_file).id
        waiting = queue.queue_upload(text_file).id
        _fail(queue, failed)

        queue.clear_errors()

        assert [op.id for op in queue.get_all_operations()] == [waiting]

    def test_clear_releases_every_preview(self, queue, previews, make_image):
        """Test clear empties the queue and releases all previews."""
        for index in range(3):
            queue.queue_upload(make_image(name=f'{index}.jpg'))

        queue.clear()

        assert queue.get_all_operations() == []
        assert sorted(previews.released) == sorted(previews.created)

    def test_preview_released_exactly_once(self, queue, previews, make_image):
        """Test a preview is not released again by later clears."""
        queued = queue.queue_upload(make_image())
        _complete(queue, queued.id)

        queue.clear_completed()
        queue.clear()
        queue.remove_operation(queued.id)

        assert previews.released == [queued.preview_url]


class TestStatusUpdates:
    """Tests for operation lifecycle transitions."""

    def test_error_message_set_only_for_error(self, queue, text_file):
        """Test the error message follows the ERROR status."""
        queued = queue.queue_upload(text_file)
        queue.update_operation_status(queued.id, OperationStatus.PROCESSING, 'ignored')

        assert queue.get_operation(queued.id).error is None

        queue.update_operation_status(queued.id, OperationStatus.ERROR, 'rejected')

        assert queue.get_operation(queued.id).error == 'rejected'

    def test_updated_at_moves_forward(self, queue, text_file):
        """Test status updates refresh the timestamp."""
        queued = queue.queue_upload(text_file)
        operation = queue.get_operation(queued.id)
        created_at = operation.updated_at

        queue.update_operation_status(queued.id, OperationStatus.PROCESSING)

        assert operation.updated_at >= created_at

    @pytest.mark.parametrize('status', [
        OperationStatus.PENDING,
        OperationStatus.COMPLETED,
        OperationStatus.ERROR,
    ])
    def test_pending_must_go_through_processing(self, queue, text_file, status):
        """Test pending operations can only start processing."""
        queued = queue.queue_upload(text_file)

        with pytest.raises(InvalidStatusTransitionError):
            queue.update_operation_status(queued.id, status)

    def test_final_status_cannot_change(self, queue, text_file):
        """Test completed operations never move back to pending."""
        queued = queue.queue_upload(text_file)
        _complete(queue, queued.id)

        with pytest.raises(InvalidStatusTransitionError, match='completed to pending'):
            queue.update_operation_status(queued.id, OperationStatus.PENDING)

    def test_unknown_operation_is_ignored(self, queue):
        """Test updating a missing operation does nothing."""
        queue.update_operation_status('missing', OperationStatus.PROCESSING)

        assert queue.get_all_operations() == []


class TestQueries:
    """Tests for read-only queue views."""

    def test_pending_views(self, queue, text_file):
        """Test pending uploads and deletions are listed separately."""
        upload = queue.queue_upload(text_file).id
        done_upload = queue.queue_upload(text_file).id
        deletion = queue.queue_deletion('https://cdn.example.com/a.jpg')
        _complete(queue, done_upload)

        assert [op.id for op in queue.get_pending_uploads()] == [upload]
        assert [op.id for op in queue.get_pending_deletions()] == [deletion]
        assert queue.has_pending_operations() is True

    def test_has_pending_operations_false_when_all_final(self, queue, text_file):
        """Test finished operations are not pending."""
        _complete(queue, queue.queue_upload(text_file).id)

        assert queue.has_pending_operations() is False

    def test_stats(self, queue, text_file):
        """Test counts by status and type."""
        _complete(queue, queue.queue_upload(text_file).id)
        _fail(queue, queue.queue_upload(text_file).id)
        queue.queue_deletion('https://cdn.example.com/a.jpg')

        stats = queue.get_stats()

        assert stats.total == 3
        assert stats.pending == 1
        assert stats.processing == 0
        assert stats.completed == 1
        assert stats.error == 1
        assert stats.uploads == 2
        assert stats.deletions == 1

    def test_by_type_and_status(self, queue, text_file):
        """Test filtering by type and by status."""
        upload = queue.queue_upload(text_file).id
        deletion = queue.queue_deletion('https://cdn.example.com/a.jpg')
        queue.update_operation_status(deletion, OperationStatus.PROCESSING)

        uploads = queue.get_operations_by_type(OperationType.UPLOAD)
        processing = queue.get_operations_by_status(OperationStatus.PROCESSING)

        assert [op.id for op in uploads] == [upload]
        assert [op.id for op in processing] == [deletion]

    def test_queued_files_map_status(self, queue, text_file):
        """Test queued files use the upload field status vocabulary."""
        queued = queue.queue_upload(text_file)
        queue.queue_deletion('https://cdn.example.com/a.jpg')
        queue.update_operation_status(queued.id, OperationStatus.PROCESSING)

        files = queue.get_queued_files()

        assert len(files) == 1
        assert files[0].id == queued.id
        assert files[0].file is text_file
        assert files[0].status == QueuedFileStatus.UPLOADING

    def test_queued_files_for_field_filters(self, queue, text_file):
        """Test each supplied key must match and omitted keys match all."""
        hero_gallery = queue.queue_upload(text_file, 'hero', 'gallery').id
        hero_cover = queue.queue_upload(text_file, 'hero', 'cover').id
        footer_gallery = queue.queue_upload(text_file, 'footer', 'gallery').id
        unkeyed = queue.queue_upload(text_file).id

        def ids(**keys):
            return [f.id for f in queue.get_queued_files_for_field(**keys)]

        assert ids(component_id='hero') == [hero_gallery, hero_cover]
        assert ids(field_name='gallery') == [hero_gallery, footer_gallery]
        assert ids(component_id='hero', field_name='gallery') == [hero_gallery]
        assert ids() == [hero_gallery, hero_cover, footer_gallery, unkeyed]
        assert ids(component_id='', field_name='') == ids()


class TestListeners:
    """Tests for change notifications."""

    def test_every_mutation_notifies(self, queue, text_file):
        """Test listeners run after each mutation."""
        calls = []
        queue.add_listener(lambda: calls.append(queue.get_stats().total))

        queued = queue.queue_upload(text_file)
        queue.update_operation_status(queued.id, OperationStatus.PROCESSING)
        queue.update_operation_status(queued.id, OperationStatus.COMPLETED)
        queue.clear_completed()

        assert calls == [1, 1, 1, 0]

    def test_unsubscribe(self, queue, text_file):
        """Test unsubscribed listeners are not called."""
        calls = []
        unsubscribe = queue.add_listener(lambda: calls.append(1))

        queue.queue_upload(text_file)
        unsubscribe()
        queue.queue_upload(text_file)

        assert calls == [1]

    def test_empty_clear_does_not_notify(self, queue, text_file):
        """Test clears that remove nothing stay silent."""
        queue.queue_upload(text_file)
        calls = []
        queue.add_listener(lambda: calls.append(1))

        queue.clear_completed()
        queue.clear_errors()

        assert calls == []

    def test_failing_listener_does_not_block_others(self, queue, text_file, caplog):
        """Test a raising listener is logged and others still run."""
        calls = []

        def broken():
            raise RuntimeError('listener bug')

        queue.add_listener(broken)
        queue.add_listener(lambda: calls.append(1))

        queue.queue_upload(text_file)

        assert calls == [1]
        assert 'Queue listener failed' in caplog.text
