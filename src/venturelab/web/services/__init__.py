"""Service layer wrapping the store, executor and chainer."""
