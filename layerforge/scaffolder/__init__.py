"""layerforge scaffolder -- emits a feature's artifacts across architectural layers.

A raw feature request is validated by :class:`SpecResolver` into an immutable
:class:`FeatureSpec`; the :class:`TemplateCatalog` says which templates apply
to each layer, and :class:`ArtifactEmitter` renders and writes them under the
configured collision policies.  :class:`FeatureScaffolder` drives the whole
flow layer by layer.

Quick usage::

    from layerforge.scaffolder import (
        FeatureRequest, FeatureScaffolder, LocalFileSystem, SpecResolver, TemplateCatalog,
    )

    catalog = TemplateCatalog.load()
    spec = SpecResolver(catalog.options).resolve(
        FeatureRequest(name="Invoice", operations=["create"])
    )
    result = await FeatureScaffolder(catalog, LocalFileSystem(".")).scaffold(spec)
"""

from .naming import InvalidNameError, NamingVariantSet, derive
from .layers import DependencyOrderer, Layer, LayeringViolationError
from .models import CollisionPolicy, FeatureSpec, Operation, PropertyKind, PropertySpec
from .spec import FeatureRequest, SpecError, SpecResolver
from .templates import TemplateRenderer
from .catalog import CatalogError, ProviderProfile, TemplateCatalog, TemplateDescriptor
from .filesystem import FileSystem, LocalFileSystem, MemoryFileSystem
from .emitter import (
    ArtifactEmitter,
    EmitError,
    EmitStatus,
    GeneratedArtifact,
    PathCollisionError,
    UnresolvedPlaceholderError,
)
from .generator import FeatureScaffolder, ScaffoldAborted, ScaffoldResult

__all__ = [
    # Naming
    "derive",
    "NamingVariantSet",
    "InvalidNameError",
    # Layers
    "Layer",
    "DependencyOrderer",
    "LayeringViolationError",
    # Spec
    "FeatureRequest",
    "FeatureSpec",
    "PropertySpec",
    "PropertyKind",
    "Operation",
    "CollisionPolicy",
    "SpecResolver",
    "SpecError",
    # Catalog
    "TemplateCatalog",
    "TemplateDescriptor",
    "ProviderProfile",
    "TemplateRenderer",
    "CatalogError",
    # Emission
    "ArtifactEmitter",
    "GeneratedArtifact",
    "EmitStatus",
    "EmitError",
    "UnresolvedPlaceholderError",
    "PathCollisionError",
    "FileSystem",
    "LocalFileSystem",
    "MemoryFileSystem",
    # Flow
    "FeatureScaffolder",
    "ScaffoldResult",
    "ScaffoldAborted",
]
