"""shipyard: monorepo-to-runtime-image build pipeline and runtime supervisor."""

__version__ = "0.4.0"
