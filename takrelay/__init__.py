"""CoT firehose loops, batched persistence, certificate group policy and soak harness."""

__version__ = "0.0.1"