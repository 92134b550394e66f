from eventcomb.data.events import EventBatch, iter_batches, load_events

__all__ = ["EventBatch", "iter_batches", "load_events"]
