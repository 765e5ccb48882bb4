class StorageAPI(object):
    """
    Contract for how the protocol engines talk to local files.
    Implementation can use the filesystem, memory, etc.,
    but must keep the same method names and parameters.
    """

    def stat(self, name):
        """Return (exists, size) for the named resource."""
        raise NotImplementedError()

    def open_for_read(self, name):
        raise NotImplementedError()

    def read_chunk(self, handle, max_bytes):
        raise NotImplementedError()

    def open_for_write(self, name):
        raise NotImplementedError()

    def append(self, handle, data):
        raise NotImplementedError()

    def commit(self, handle):
        """Finish a write and return the final path."""
        raise NotImplementedError()

    def discard(self, handle):
        """Abandon a write; nothing may be left behind."""
        raise NotImplementedError()

    def close(self, handle):
        raise NotImplementedError()
