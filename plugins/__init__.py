"""
Встроенные auth плагины authcore.

Каждый плагин лежит в своём пакете с манифестом plugin.json и
загружается PluginRegistry.load_from_manifests().
"""
